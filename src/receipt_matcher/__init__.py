"""
Bank transaction → Receipt search → Match hints

A resumable, multi-strategy search pipeline that finds the receipt or
invoice behind an incomplete bank transaction: files already on record,
mailbox attachments, and HTML e-mail invoices rendered to PDF. Every
candidate is scored, deduplicated by content hash, and proposed as a hint
for an external link finalizer.
"""

__version__ = "0.1.0"
