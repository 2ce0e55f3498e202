"""DentaRad - CBCT Teleradiology Reporting Backend.

A backend service for dental clinics that upload CBCT scans and for the
radiologists who report on them.
"""

__version__ = "0.1.0"
