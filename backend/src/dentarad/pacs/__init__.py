"""Orthanc PACS integration.

Usage:
    from dentarad.pacs import get_orthanc_client

    client = get_orthanc_client()
    status = await client.check_connection()
    study = await client.get_study("1.2.840.113619.2.55.3")
"""

from .orthanc import OrthancClient, OrthancError, get_orthanc_client

__all__ = ["OrthancClient", "OrthancError", "get_orthanc_client"]
