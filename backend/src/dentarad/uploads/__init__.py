"""Scan uploads: archive validation, folder naming, quotas, Dropbox and
downloads."""
