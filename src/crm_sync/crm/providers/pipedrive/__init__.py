"""Pipedrive provider: static API token, v1 REST endpoints, v1 webhooks."""

from src.crm_sync.crm.providers.pipedrive.auth import PipedriveAuth
from src.crm_sync.crm.providers.pipedrive.client import PipedriveClient

__all__ = ["PipedriveAuth", "PipedriveClient"]
