"""
Clinic backend: staff authentication with two-factor handshake.

Layout:
- config.py           : settings from the environment (.env)
- db.py               : SQLAlchemy engine and sessions
- auth_models.py      : users, backup codes, pre-auth sessions, email tokens
- mail_models.py      : email outbox
- auth_security.py    : passwords, JWTs, codes
- totp.py             : authenticator codes (pyotp) and QR provisioning
- validation.py       : explicit request validation (Valid / Invalid)
- auth_service.py     : accounts, primary login, lockout, password reset
- two_factor.py       : the handshake (initiate / verify)
- sessions.py         : access + refresh tokens, refresh rotation, logout
- two_factor_setup.py : enrollment, disable, backup-code regeneration
- mail_templates.py   : email parameter bags and plain-text rendering
- mail_service.py     : email delivery (outbox or SMTP)
- api_main.py         : FastAPI application
- cli.py              : account administration and outbox delivery
"""
