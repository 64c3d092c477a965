"""
Authentication Core
===================
    - ``MsAuthenticator``       : the sign-in state machine
    - ``CertificateRouteBridge``: answers cert-auth requests with a client cert
    - ``SessionCache``          : snapshot paths and freshness checks
"""

from .authenticator import (
    AuthFlow,
    AuthState,
    MsAuthenticator,
    authenticate,
    launch_browser,
    load_storage_state,
    probe,
    redirect_accepted,
)
from .cert_bridge import CertificateRouteBridge, cert_auth_glob
from .session_cache import SessionCache, find_project_root, sanitize_identity

__all__ = [
    "AuthFlow",
    "AuthState",
    "MsAuthenticator",
    "authenticate",
    "launch_browser",
    "load_storage_state",
    "probe",
    "redirect_accepted",
    "CertificateRouteBridge",
    "cert_auth_glob",
    "SessionCache",
    "find_project_root",
    "sanitize_identity",
]
