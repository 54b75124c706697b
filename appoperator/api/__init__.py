"""REST front door: deploy, status and delete endpoints."""

from appoperator.api.app import create_app

__all__ = ["create_app"]
