"""CRM domain models and secure services."""
