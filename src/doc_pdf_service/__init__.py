"""
DOCX to PDF conversion service package.

Runs a headless converter (LibreOffice by default) one job at a time behind a
FastAPI application. Conversions are returned inline from `/api/convert-sync`
or delivered to a callback URL for jobs started with `/api/convert`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
