from datetime import timedelta

from fastapi.testclient import TestClient

from payflow.errors import GatewayPushError
from payflow.helpers import utcnow
from payflow.schemas.schemas import StatusFailure, StatusPending


PUSH = {"phoneNumber": "254712345678", "amount": 300, "accountReference": "ID123"}


def _callback(correlation_id, merchant_id, result_code=0, receipt="QGH7X9K2M1", phone=254712345678):
    callback = {
        "MerchantRequestID": merchant_id,
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": 300.0},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20261019102115},
                {"Name": "PhoneNumber", "Value": phone},
            ]
        }
    return {"Body": {"stkCallback": callback}}


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_push_records_pending_request(client, gateway, app_module):
    _, database, models = app_module
    resp = client.post("/payments/push", json=PUSH)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "Pending"
    assert body["correlationId"] == "CO1"
    assert gateway.pushes == [("254712345678", 300, "ID123")]

    with database.SessionLocal() as db:
        requests = db.query(models.PaymentRequest).all()
        assert len(requests) == 1
        assert requests[0].correlation_id == "CO1"
        assert requests[0].status == "Pending"


def test_push_rejects_bad_input_before_gateway(client, gateway):
    for payload in (
        {**PUSH, "amount": 0},
        {**PUSH, "amount": -5},
        {**PUSH, "phoneNumber": "12345"},
        {**PUSH, "accountReference": "  "},
    ):
        resp = client.post("/payments/push", json=payload)
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"
    assert gateway.pushes == []


def test_push_accepts_smallest_amount_and_rounds_up(client, gateway):
    resp = client.post("/payments/push", json={**PUSH, "amount": 0.5, "phoneNumber": "0712345678"})
    assert resp.status_code == 200
    assert gateway.pushes == [("254712345678", 1, "ID123")]


def test_push_gateway_failure_is_generic_and_not_recorded(client, gateway, app_module):
    _, database, models = app_module
    gateway.push_results = [GatewayPushError("Invalid Access Token")]
    resp = client.post("/payments/push", json=PUSH)
    assert resp.status_code == 502
    assert resp.json()["message"].startswith("Payment verification failed")
    assert len(gateway.pushes) == 1
    with database.SessionLocal() as db:
        assert db.query(models.PaymentRequest).count() == 0


def test_push_retries_only_when_push_never_left(client, gateway):
    gateway.push_results = [GatewayPushError("connection refused", retryable=True)]
    resp = client.post("/payments/push", json=PUSH)
    assert resp.status_code == 200
    assert len(gateway.pushes) == 2


def test_push_idempotency_key_replays_response(client, gateway, app_module):
    _, database, models = app_module
    headers = {"Idempotency-Key": "push-1"}
    first = client.post("/payments/push", json=PUSH, headers=headers)
    second = client.post("/payments/push", json=PUSH, headers=headers)
    assert first.status_code == 200
    assert first.json() == second.json()
    assert len(gateway.pushes) == 1

    conflict = client.post("/payments/push", json={**PUSH, "amount": 500}, headers=headers)
    assert conflict.status_code == 409
    with database.SessionLocal() as db:
        assert db.query(models.PaymentRequest).count() == 1


def test_confirm_is_idempotent_for_same_account(client, make_account, app_module):
    _, database, models = app_module
    make_account("U1")
    payload = {"transactionCode": "QGH7X9K2M1", "phoneNumber": "254712345678", "accountId": "U1"}

    first = client.post("/payments/confirm", json=payload)
    second = client.post("/payments/confirm", json=payload)
    assert first.status_code == 200
    assert first.json()["verified"] is True
    assert first.json()["created"] is True
    assert second.status_code == 200
    assert second.json()["verified"] is True
    assert second.json()["created"] is False

    with database.SessionLocal() as db:
        assert db.query(models.ConfirmedPayment).count() == 1
        account = db.get(models.Account, "U1")
        assert account.payment_verified is True
        assert account.verified_by == "mpesa:QGH7X9K2M1"


def test_confirm_rejects_code_reuse_by_other_account(client, make_account, app_module):
    _, database, models = app_module
    make_account("U1")
    make_account("U2")
    payload = {"transactionCode": "QGH7X9K2M1", "phoneNumber": "254712345678", "accountId": "U1"}
    assert client.post("/payments/confirm", json=payload).status_code == 200

    resp = client.post("/payments/confirm", json={**payload, "accountId": "U2"})
    assert resp.status_code == 409
    assert resp.json() == {
        "error": "TransactionCodeReuseError",
        "message": "This M-Pesa transaction code has already been used.",
    }
    with database.SessionLocal() as db:
        assert db.get(models.Account, "U2").payment_verified is False
        assert db.query(models.ConfirmedPayment).count() == 1


def test_confirm_validation_errors(client, make_account):
    make_account("U1")
    base = {"transactionCode": "QGH7X9K2M1", "phoneNumber": "254712345678", "accountId": "U1"}
    assert client.post("/payments/confirm", json={**base, "transactionCode": ""}).status_code == 422
    assert client.post("/payments/confirm", json={**base, "phoneNumber": "555"}).status_code == 422
    resp = client.post("/payments/confirm", json={**base, "accountId": "nobody"})
    assert resp.status_code == 422
    assert resp.json()["message"] == "Account not found."


def test_callback_completes_request_and_verifies_account(client, make_account, app_module):
    _, database, models = app_module
    make_account("U1", id_number="ID123")
    client.post("/payments/push", json=PUSH)

    resp = client.post("/payments/callback/cb-secret", json=_callback("CO1", "MR1"))
    assert resp.status_code == 200
    assert resp.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    with database.SessionLocal() as db:
        request = db.query(models.PaymentRequest).filter_by(correlation_id="CO1").one()
        assert request.status == "Completed"
        assert request.transaction_code == "QGH7X9K2M1"
        payment = db.query(models.ConfirmedPayment).one()
        assert payment.linked_account_id == "U1"
        assert payment.source == "callback"
        assert db.get(models.Account, "U1").payment_verified is True

    # The user typing the code afterwards converges on the same record.
    manual = client.post(
        "/payments/confirm",
        json={"transactionCode": "qgh7x9k2m1", "phoneNumber": "0712345678", "accountId": "U1"},
    )
    assert manual.status_code == 200
    assert manual.json()["created"] is False


def test_callback_failure_then_late_success_keeps_failed(client, app_module):
    _, database, models = app_module
    client.post("/payments/push", json=PUSH)

    assert client.post("/payments/callback/cb-secret", json=_callback("CO1", "MR1", result_code=1032)).status_code == 200
    assert client.post("/payments/callback/cb-secret", json=_callback("CO1", "MR1")).status_code == 200

    with database.SessionLocal() as db:
        request = db.query(models.PaymentRequest).filter_by(correlation_id="CO1").one()
        assert request.status == "Failed"
        assert request.result_code == "1032"
        assert db.query(models.ConfirmedPayment).count() == 0


def test_callback_authentication_and_shape(client, app_module):
    _, database, models = app_module
    client.post("/payments/push", json=PUSH)

    assert client.post("/payments/callback/wrong", json=_callback("CO1", "MR1")).status_code == 401
    assert client.post("/payments/callback/cb-secret", json={"Body": {}}).status_code == 400
    # Unknown or mismatched identifiers are acknowledged but change nothing.
    assert client.post("/payments/callback/cb-secret", json=_callback("CO9", "MR9")).status_code == 200
    assert client.post("/payments/callback/cb-secret", json=_callback("CO1", "MR-other")).status_code == 200

    with database.SessionLocal() as db:
        assert db.query(models.PaymentRequest).filter_by(correlation_id="CO1").one().status == "Pending"


def test_refresh_polls_gateway(client, gateway):
    client.post("/payments/push", json=PUSH)

    gateway.status_results = [StatusPending(correlation_id="CO1", description="The transaction is being processed")]
    resp = client.post("/payments/CO1/refresh")
    assert resp.status_code == 200
    assert resp.json()["status"] == "Pending"
    assert resp.json()["outcome"]["kind"] == "pending"

    gateway.status_results = [StatusFailure(correlation_id="CO1", result_code="1037", description="DS timeout")]
    resp = client.post("/payments/CO1/refresh")
    assert resp.json()["status"] == "Failed"
    assert resp.json()["outcome"] == {
        "kind": "failure",
        "correlation_id": "CO1",
        "merchant_request_id": None,
        "result_code": "1037",
        "description": "DS timeout",
    }

    assert client.post("/payments/CO404/refresh").status_code == 422


def test_sweep_expires_stale_requests_once(client, app_module):
    _, database, models = app_module
    client.post("/payments/push", json=PUSH)
    client.post("/payments/push", json={**PUSH, "accountReference": "ID999"})
    with database.SessionLocal() as db:
        stale = db.query(models.PaymentRequest).filter_by(correlation_id="CO1").one()
        stale.created_at = utcnow() - timedelta(minutes=10)
        db.commit()

    first = client.post("/admin/sweep")
    second = client.post("/admin/sweep")
    assert first.json() == {"expired": 1, "flagsApplied": 0}
    assert second.json() == {"expired": 0, "flagsApplied": 0}

    listed = client.get("/payments/requests", params={"status": "Expired"}).json()
    assert [r["correlationId"] for r in listed] == ["CO1"]


def test_reconciliation_csv_reports_unverified_accounts(client, make_account, app_module):
    _, database, models = app_module
    make_account("U1")
    with database.SessionLocal() as db:
        db.add(models.ConfirmedPayment(
            transaction_code="QGH7X9K2M1",
            phone_number="254712345678",
            amount=300,
            linked_account_id="U1",
            source="manual",
        ))
        db.commit()

    resp = client.get("/reconciliation_data")
    assert resp.status_code == 200
    assert resp.headers["X-Mismatch-Count"] == "1"
    assert "kind,transactionCode,account,amount,correlationId" in resp.text
    assert "unverified_account,QGH7X9K2M1,U1,300," in resp.text


def test_replay_resets_flag_outbox_record(client, app_module):
    _, database, models = app_module
    with database.SessionLocal() as db:
        record = models.AccountFlagOutbox(
            account_id="U1",
            transaction_code="QGH7X9K2M1",
            status="failed",
            attempt_count=3,
            last_error="boom",
            next_attempt_at=utcnow() + timedelta(hours=1),
        )
        db.add(record)
        db.commit()
        record_id = record.id

    resp = client.post(f"/admin/replay/{record_id}")
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"
    assert resp.json()["lastError"] is None
    assert client.post("/admin/replay/999").status_code == 404


def test_bearer_token_required_when_configured(app_module, gateway):
    main, _, _ = app_module
    client = TestClient(main.app)
    assert client.get("/payments/requests").status_code == 401
    assert client.get("/payments/requests", headers={"Authorization": "Bearer nope"}).status_code == 401
    assert client.get("/payments/requests", headers={"Authorization": "Bearer testtoken"}).status_code == 200


def test_error_body_matches_error_model(client, make_account):
    from payflow.schemas.schemas import ErrorResponse

    resp = client.post(
        "/payments/confirm",
        json={"transactionCode": "QGH7X9K2M1", "phoneNumber": "254712345678", "accountId": "nobody"},
    )
    assert resp.status_code == 422
    assert ErrorResponse.model_validate(resp.json()) == ErrorResponse(error="ValidationError", message="Account not found.")
    schema = client.get("/openapi.json").json()
    assert "ErrorResponse" in schema["components"]["schemas"]


def test_shutdown_closes_gateway_client(app_module, monkeypatch):
    import asyncio

    import httpx

    from payflow.clients.gateway_client import GatewayClient

    main, _, _ = app_module
    gateway = GatewayClient(base_url="https://gateway.test", transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    monkeypatch.setattr(main, "gateway_client", gateway)

    asyncio.run(main.shutdown_event())

    assert gateway.client.is_closed
