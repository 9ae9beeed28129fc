"""
Tests for the asynchronous webhook job processor: resource sync, retry
policy, failure recording and replay.
"""

from datetime import datetime, timezone

import pytest

from fic_middleware.handlers.webhook_processor import ProcessingStatus
from fic_middleware.models.cloudevents import WebhookJob
from fic_middleware.models.records import AccountStatus, EventStatus
from fic_middleware.models.resources import ResourceType
from fic_middleware.services.event_store import build_dedup_key
from tests.factories import ACCOUNT_ID, CLIENT_CREATE, CLIENT_DELETE, COMPANY_ID, INVOICE_UPDATE


def _job(event=CLIENT_CREATE, ids=(123, 456), ce_id="evt-1"):
    return WebhookJob(
        event=event,
        occurred_at=datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc),
        subject=f"company:{COMPANY_ID}",
        ce_id=ce_id,
        resource_ids=list(ids),
        account_id=ACCOUNT_ID,
        event_group="entity",
    )


def _client_path(resource_id):
    return f"/c/{COMPANY_ID}/entities/clients/{resource_id}"


async def _status(container, resource_id, event=CLIENT_CREATE, ce_id="evt-1"):
    event_row = await container.events.get(build_dedup_key(ACCOUNT_ID, resource_id, event, ce_id=ce_id))
    return event_row.status if event_row else None


@pytest.mark.asyncio
async def test_successful_job_syncs_every_resource(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), json={"data": {"id": 123, "name": "Mario Rossi", "vat_number": "IT123"}})
    fic_api.add("GET", _client_path(456), json={"data": {"id": 456, "name": "Anna Bianchi"}})

    result = await container.processor.process(_job())

    assert result.status == ProcessingStatus.SUCCEEDED
    assert result.processed_ids == [123, 456]
    assert result.attempts == 1
    mock_sleep.assert_not_called()

    stored = await container.resources.get(ACCOUNT_ID, ResourceType.CLIENT, 123)
    assert stored["name"] == "Mario Rossi"
    assert stored["vat_number"] == "IT123"
    assert await _status(container, 123) == EventStatus.PROCESSED
    assert await _status(container, 456) == EventStatus.PROCESSED


@pytest.mark.asyncio
async def test_invoice_totals_are_normalized(container, account, fic_api):
    fic_api.add(
        "GET",
        f"/c/{COMPANY_ID}/issued_documents/invoices/77",
        json={"data": {"id": 77, "number": 12, "status": "paid", "amount_net": 100.5, "amount_gross": 122.61}},
    )

    result = await container.processor.process(_job(event=INVOICE_UPDATE, ids=[77]))

    assert result.status == ProcessingStatus.SUCCEEDED
    stored = await container.resources.get(ACCOUNT_ID, ResourceType.INVOICE, 77)
    assert stored["total_gross"] == 122.61
    assert stored["status"] == "paid"


@pytest.mark.asyncio
async def test_transient_failure_is_retried_after_fixed_backoff(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), json={"data": {"id": 123}})
    fic_api.add("GET", _client_path(456), status_code=503, json={})
    fic_api.add("GET", _client_path(456), json={"data": {"id": 456}})

    result = await container.processor.process(_job())

    assert result.status == ProcessingStatus.SUCCEEDED
    assert result.attempts == 2
    mock_sleep.assert_awaited_once_with(60.0)
    # Completed ids are not fetched again on retry
    assert len(fic_api.calls("GET", _client_path(123))) == 1
    assert len(fic_api.calls("GET", _client_path(456))) == 2


@pytest.mark.asyncio
async def test_provider_rate_limit_is_retried(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), status_code=429, json={}, headers={"Retry-After": "5"})
    fic_api.add("GET", _client_path(123), json={"data": {"id": 123}})

    result = await container.processor.process(_job(ids=[123]))

    assert result.status == ProcessingStatus.SUCCEEDED
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_exhausted_job_marks_events_error(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), status_code=500, json={"error": {"message": "maintenance"}})

    result = await container.processor.process(_job(ids=[123]))

    assert result.status == ProcessingStatus.FAILED
    assert result.attempts == 3
    assert mock_sleep.await_count == 2
    assert "maintenance" in result.error

    event = await container.events.get(build_dedup_key(ACCOUNT_ID, 123, CLIENT_CREATE, ce_id="evt-1"))
    assert event.status == EventStatus.ERROR
    assert "maintenance" in event.error


@pytest.mark.asyncio
async def test_unauthorized_marks_account_and_fails_fast(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), status_code=401, json={})

    result = await container.processor.process(_job())

    assert result.status == ProcessingStatus.FAILED
    assert result.attempts == 1
    mock_sleep.assert_not_called()

    stored_account = await container.accounts.get(ACCOUNT_ID)
    assert stored_account.status == AccountStatus.NEEDS_REFRESH
    assert await _status(container, 123) == EventStatus.ERROR
    assert await _status(container, 456) == EventStatus.ERROR


@pytest.mark.asyncio
async def test_client_error_is_not_retried(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), status_code=404, json={"error": {"message": "Not found"}})

    result = await container.processor.process(_job(ids=[123]))

    assert result.status == ProcessingStatus.FAILED
    assert result.attempts == 1
    mock_sleep.assert_not_called()


@pytest.mark.asyncio
async def test_missing_credentials_fail_the_job(container, fic_api):
    result = await container.processor.process(_job(ids=[123]))

    assert result.status == ProcessingStatus.FAILED
    assert result.error == f"Unknown account {ACCOUNT_ID}"
    assert fic_api.requests == []


@pytest.mark.asyncio
async def test_delete_removes_local_copy_without_fetching(container, fic_api):
    await container.resources.upsert(ACCOUNT_ID, ResourceType.CLIENT, {"id": 123, "name": "Mario Rossi"})

    result = await container.processor.process(_job(event=CLIENT_DELETE, ids=[123]))

    assert result.status == ProcessingStatus.SUCCEEDED
    assert await container.resources.get(ACCOUNT_ID, ResourceType.CLIENT, 123) is None
    assert fic_api.requests == []
    assert await _status(container, 123, event=CLIENT_DELETE) == EventStatus.PROCESSED


@pytest.mark.asyncio
async def test_unmapped_event_is_ignored(container, fic_api):
    result = await container.processor.process(_job(event="it.fattureincloud.webhooks.cashbook.create"))

    assert result.status == ProcessingStatus.IGNORED
    assert fic_api.requests == []


@pytest.mark.asyncio
async def test_job_without_ids_succeeds(container):
    result = await container.processor.process(_job(ids=[]))

    assert result.status == ProcessingStatus.SUCCEEDED
    assert result.processed_ids == []


@pytest.mark.asyncio
async def test_reprocess_failed_replays_error_events(container, account, fic_api):
    fic_api.add("GET", _client_path(123), status_code=404, json={})
    fic_api.add("GET", _client_path(123), json={"data": {"id": 123, "name": "Mario Rossi"}})
    fic_api.add("GET", _client_path(456), json={"data": {"id": 456}})

    first = await container.processor.process(_job())
    assert first.status == ProcessingStatus.FAILED

    results = await container.processor.reprocess_failed(ACCOUNT_ID)

    assert [r.status for r in results] == [ProcessingStatus.SUCCEEDED]
    assert sorted(results[0].processed_ids) == [123, 456]
    assert await _status(container, 123) == EventStatus.PROCESSED
    assert await container.events.list_for_account(ACCOUNT_ID, status=EventStatus.ERROR) == []


@pytest.mark.asyncio
async def test_empty_upstream_payload_marks_events_error(container, account, fic_api, mock_sleep):
    fic_api.add("GET", _client_path(123), json={"data": {}})

    result = await container.processor.process(_job(ids=[123]))

    assert result.status == ProcessingStatus.FAILED
    assert result.attempts == 1
    mock_sleep.assert_not_called()
    assert await _status(container, 123) == EventStatus.ERROR
    assert await container.resources.get(ACCOUNT_ID, ResourceType.CLIENT, 123) is None
