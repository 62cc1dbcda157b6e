"""Unit tests for webhook normalization across the three providers."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.crm_sync.crm.errors import WebhookParseError
from src.crm_sync.crm.providers.hubspot.webhooks import parse_hubspot_webhook, split_hubspot_batch
from src.crm_sync.crm.providers.pipedrive.webhooks import parse_pipedrive_webhook
from src.crm_sync.crm.providers.salesforce.webhooks import parse_salesforce_webhook
from src.crm_sync.crm.schemas import CRMObjectType, CRMProvider, WebhookAction


# ── Salesforce ─────────────────────────────────────────────────────────────


class TestSalesforceWebhook:
    def test_contact_update(self):
        event = parse_salesforce_webhook(
            {
                "event": {"replayId": 12, "type": "updated", "createdDate": "2024-01-15T10:30:00.000Z"},
                "sobject": {"Id": "003A000001", "attributes": {"type": "Contact"}, "Email": "ada@example.com"},
            }
        )
        assert event.id == "12"
        assert event.provider == CRMProvider.SALESFORCE
        assert event.object_type == CRMObjectType.CONTACT
        assert event.object_id == "003A000001"
        assert event.action == WebhookAction.UPDATED
        assert event.timestamp == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)
        assert event.data["Email"] == "ada@example.com"

    def test_object_type_inferred_from_id_prefix(self):
        """Without sobject attributes, the record id key prefix decides the object."""
        event = parse_salesforce_webhook(
            {
                "event": {"replayId": 13, "type": "deleted", "createdDate": "2024-01-15T10:30:00Z"},
                "sobject": {"Id": "006A000009"},
            }
        )
        assert event.object_type == CRMObjectType.DEAL
        assert event.action == WebhookAction.DELETED

    def test_missing_record_id(self):
        with pytest.raises(WebhookParseError):
            parse_salesforce_webhook(
                {"event": {"replayId": 1, "type": "updated", "createdDate": "2024-01-15T10:30:00Z"}, "sobject": {}}
            )

    def test_missing_event_block(self):
        with pytest.raises(WebhookParseError):
            parse_salesforce_webhook({"sobject": {"Id": "003A"}})

    def test_unsupported_sobject(self):
        with pytest.raises(WebhookParseError):
            parse_salesforce_webhook(
                {
                    "event": {"replayId": 1, "type": "updated", "createdDate": "2024-01-15T10:30:00Z"},
                    "sobject": {"Id": "001A", "attributes": {"type": "Account"}},
                }
            )


# ── HubSpot ────────────────────────────────────────────────────────────────


class TestHubSpotWebhook:
    def test_contact_property_change(self):
        event = parse_hubspot_webhook(
            {
                "eventId": 100,
                "subscriptionId": 7,
                "subscriptionType": "contact.propertyChange",
                "objectId": 123,
                "propertyName": "email",
                "propertyValue": "a@b.co",
                "occurredAt": 1705314600000,
                "portalId": 62515,
            }
        )
        assert event.id == "100"
        assert event.object_type == CRMObjectType.CONTACT
        assert event.object_id == "123"
        assert event.action == WebhookAction.UPDATED
        assert event.timestamp == datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        ("subscription_type", "action"),
        [
            ("deal.creation", WebhookAction.CREATED),
            ("deal.deletion", WebhookAction.DELETED),
            ("contact.merge", WebhookAction.UPDATED),
        ],
    )
    def test_subscription_kinds(self, subscription_type, action):
        event = parse_hubspot_webhook(
            {"eventId": 1, "subscriptionType": subscription_type, "objectId": 5, "occurredAt": 1705314600000}
        )
        assert event.action == action

    def test_missing_object_id(self):
        with pytest.raises(WebhookParseError):
            parse_hubspot_webhook({"eventId": 1, "subscriptionType": "contact.creation", "occurredAt": 1705314600000})

    def test_out_of_range_timestamp(self):
        """An occurredAt beyond the representable range is a parse error."""
        with pytest.raises(WebhookParseError):
            parse_hubspot_webhook(
                {"eventId": 1, "subscriptionType": "contact.creation", "objectId": 5, "occurredAt": 10**30}
            )

    def test_unsupported_object(self):
        with pytest.raises(WebhookParseError):
            parse_hubspot_webhook(
                {"eventId": 1, "subscriptionType": "company.creation", "objectId": 5, "occurredAt": 1705314600000}
            )

    def test_batch_must_be_split_first(self):
        """A raw HubSpot batch is a list; each element parses on its own."""
        batch = [
            {"eventId": 1, "subscriptionType": "contact.creation", "objectId": 5, "occurredAt": 1705314600000},
            {"eventId": 2, "subscriptionType": "deal.creation", "objectId": 6, "occurredAt": 1705314600000},
        ]
        with pytest.raises(WebhookParseError):
            parse_hubspot_webhook(batch)
        events = [parse_hubspot_webhook(item) for item in split_hubspot_batch(batch)]
        assert [e.object_type for e in events] == [CRMObjectType.CONTACT, CRMObjectType.DEAL]
        assert split_hubspot_batch(batch[0]) == [batch[0]]


# ── Pipedrive ──────────────────────────────────────────────────────────────


class TestPipedriveWebhook:
    def test_person_updated(self):
        event = parse_pipedrive_webhook(
            {
                "meta": {"action": "updated", "object": "person", "id": 42, "timestamp": 1705314600},
                "current": {"id": 42, "name": "Ada Lovelace"},
                "previous": {"id": 42, "name": "Ada"},
            }
        )
        assert event.provider == CRMProvider.PIPEDRIVE
        assert event.object_type == CRMObjectType.CONTACT
        assert event.object_id == "42"
        assert event.action == WebhookAction.UPDATED
        assert event.data == {"id": 42, "name": "Ada Lovelace"}
        assert event.id == "person:42:updated:1705314600"

    def test_deleted_deal_uses_previous(self):
        """Deletions have no ``current``; the id and data come from ``previous``."""
        event = parse_pipedrive_webhook(
            {
                "meta": {"action": "deleted", "object": "deal", "timestamp": 1705314600},
                "current": None,
                "previous": {"id": 7, "title": "Old deal"},
            }
        )
        assert event.object_type == CRMObjectType.DEAL
        assert event.object_id == "7"
        assert event.action == WebhookAction.DELETED
        assert event.data["title"] == "Old deal"

    def test_missing_meta(self):
        with pytest.raises(WebhookParseError):
            parse_pipedrive_webhook({"current": {"id": 1}})

    def test_missing_object_id(self):
        with pytest.raises(WebhookParseError):
            parse_pipedrive_webhook({"meta": {"action": "added", "object": "person", "timestamp": 1705314600}})

    def test_unsupported_object(self):
        with pytest.raises(WebhookParseError):
            parse_pipedrive_webhook(
                {"meta": {"action": "added", "object": "organization", "id": 3, "timestamp": 1705314600}}
            )

    def test_out_of_range_timestamp(self):
        with pytest.raises(WebhookParseError):
            parse_pipedrive_webhook({"meta": {"action": "added", "object": "person", "id": 3, "timestamp": 10**30}})

    def test_unknown_action(self):
        with pytest.raises(WebhookParseError):
            parse_pipedrive_webhook({"meta": {"action": "archived", "object": "deal", "id": 3, "timestamp": 1705314600}})
