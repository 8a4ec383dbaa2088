"""
docingest - Secure document ingestion for LLM pipelines.

Turns untrusted uploads (PDF, DOCX, XLSX, PPTX, plain text) into
sanitized, token-bounded chunks with cost and context-window analysis.
"""

__version__ = "1.0.0"
