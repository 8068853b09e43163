"""
PDF Prodigy Engine
==================
Document-processing job engine behind the PDF Prodigy tools.

Architecture:
    - Document Adapter: Wraps PyMuPDF documents behind a stable page/text API
    - Job Queue: FIFO queue + bounded worker pool with cooperative cancellation
    - Content Scanner: Detects PII, keywords, custom patterns and image regions
    - Redaction Engine: Destructive region removal with verification + audit log
    - Repair Engine: Structural diagnosis and staged recovery
    - Comparison Engine: Page alignment and word-level diffing
    - Transforms: OCR, protection, page numbering and cropping

Version: 1.0.0
"""

__version__ = "1.0.0"
