"""UpFace CRM security layer and API."""

__version__ = '1.0.0'

from upface_crm.app import create_app  # noqa: E402

__all__ = ['create_app', '__version__']
