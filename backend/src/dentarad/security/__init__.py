"""Account and input security: passwords, sanitization, CSRF, MFA backup
codes, login lockout and idle sessions."""
