"""orgchat - Conversational assistant over a CRM data platform."""

__version__ = "0.1.0"
