"""
Blob storage for task attachments.
"""

from .blob_storage import LocalBlobStorage

__all__ = ['LocalBlobStorage']
