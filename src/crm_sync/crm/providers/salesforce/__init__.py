"""Salesforce provider: OAuth web-server flow, SOQL/SOSL reads, sObject writes."""

from src.crm_sync.crm.providers.salesforce.auth import SalesforceAuth
from src.crm_sync.crm.providers.salesforce.client import SalesforceClient

__all__ = ["SalesforceAuth", "SalesforceClient"]
