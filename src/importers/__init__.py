"""
Importers that load existing Terraform state files into TerraDB.

Modules:
- s3: state files from an S3 bucket/prefix
- handler: Lambda entry running the S3 import once
"""

__all__ = ["s3", "handler"]
