"""
FileBlob: Local Azure Blob Storage Emulator

Emulates the block blob write path of Azure Blob Storage on a local
directory tree for offline development and testing.
"""

__version__ = "0.1.0"
__author__ = "FileBlob Contributors"

__all__ = ["__version__"]
