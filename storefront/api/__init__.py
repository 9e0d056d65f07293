# api/__init__.py
from storefront.api.auth import get_principal, issue_token, require_admin, require_staff
from storefront.api.server import create_app

__all__ = [
    "create_app",
    "get_principal",
    "issue_token",
    "require_admin",
    "require_staff",
]
