"""
Reporting Module
"""
from .pdf import render_comparison_pdf, report_filename

__all__ = ["render_comparison_pdf", "report_filename"]
