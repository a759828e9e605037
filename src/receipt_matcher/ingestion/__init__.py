"""
File ingestion: content-hash dedupe, blob storage and HTML-to-PDF rendering.
"""

from .blob_store import BlobStoreError, LocalBlobStore, StoredBlob
from .html_to_pdf import RenderedPdf, render_html_to_pdf
from .service import FileIngestionService, IngestionSource

__all__ = [
    "FileIngestionService",
    "IngestionSource",
    "LocalBlobStore",
    "StoredBlob",
    "BlobStoreError",
    "RenderedPdf",
    "render_html_to_pdf",
]
