"""Access to the schema/capability service."""

from orgchat.capability.catalog import SchemaCatalog
from orgchat.capability.client import CapabilityClient, HttpCapabilityClient

__all__ = ["CapabilityClient", "HttpCapabilityClient", "SchemaCatalog"]
