"""Tests for pricebridge.web.routes.reconciliation."""

import pytest

from pricebridge.models import (
    ClaimStatus,
    CompletionResult,
    CompletionStatus,
    LeaseStatus,
    ReconcileResult,
    ReconcileStatus,
    RunState,
)


def reconcile_result(status: ReconcileStatus) -> ReconcileResult:
    return ReconcileResult(
        record_id="rec-1",
        period_key="20240601",
        status=status,
        state=RunState.COMMITTED if status is ReconcileStatus.OK else RunState.ABORTED,
    )


class TestReconcileRoute:
    """Tests for POST /vendor-prices/{record_id}."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (ReconcileStatus.OK, 200),
            (ReconcileStatus.BUSY, 409),
            (ReconcileStatus.NOT_FOUND, 404),
            (ReconcileStatus.FAILED, 500),
        ],
    )
    def test_status_codes(self, client, services, status, code):
        services.reconciler.reconcile.return_value = reconcile_result(status)

        response = client.post("/vendor-prices/rec-1")

        assert response.status_code == code
        assert response.json()["status"] == status.value
        services.reconciler.reconcile.assert_awaited_once_with("rec-1", None)

    def test_period_key_is_passed_through(self, client, services):
        services.reconciler.reconcile.return_value = reconcile_result(ReconcileStatus.OK)

        client.post("/vendor-prices/rec-1", params={"period_key": "20240515"})

        services.reconciler.reconcile.assert_awaited_once_with("rec-1", "20240515")

    def test_malformed_period_key_is_rejected(self, client, services):
        response = client.post("/vendor-prices/rec-1", params={"period_key": "2024-05-15"})

        assert response.status_code == 422
        services.reconciler.reconcile.assert_not_awaited()


class TestCompletionRoute:
    """Tests for POST /completion/{record_id}."""

    def test_completed(self, client, services):
        services.completion.complete.return_value = CompletionResult(
            record_id="rec-1",
            status=CompletionStatus.COMPLETED,
            claim_status=ClaimStatus.CLAIMED,
            category="groceries",
        )

        response = client.post("/completion/rec-1", json={"product_input": "Leche 1L"})

        assert response.status_code == 200
        assert response.json()["category"] == "groceries"
        services.completion.complete.assert_awaited_once_with("rec-1", "Leche 1L")

    def test_without_body_uses_stored_input(self, client, services):
        services.completion.complete.return_value = CompletionResult(
            record_id="rec-1", status=CompletionStatus.SKIPPED, claim_status=ClaimStatus.BUSY
        )

        response = client.post("/completion/rec-1")

        assert response.status_code == 200
        assert response.json()["claim_status"] == "busy"
        services.completion.complete.assert_awaited_once_with("rec-1", None)

    def test_failure_is_500(self, client, services):
        services.completion.complete.return_value = CompletionResult(
            record_id="rec-1", status=CompletionStatus.FAILED, message="model unavailable"
        )

        response = client.post("/completion/rec-1", json={})

        assert response.status_code == 500
        assert response.json()["message"] == "model unavailable"

    def test_disabled_without_classifier(self, client, services):
        services.completion = None

        response = client.post("/completion/rec-1")

        assert response.status_code == 503


def test_lease_status(client, services):
    services.leases.status.return_value = LeaseStatus(
        record_id="rec-1", lease_type="vendor_prices", held=True, holder_id="vp-1", remaining_seconds=42
    )

    response = client.get("/leases/rec-1")

    assert response.status_code == 200
    assert response.json()["holder_id"] == "vp-1"
    services.leases.status.assert_awaited_once_with("rec-1", "vendor_prices")
