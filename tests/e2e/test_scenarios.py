"""
End-to-end flows through the HTTP API and the autopay batch.

Each test walks one customer journey:
- wallet checkout activates an order with its first installment
- a short wallet makes the next autopay day fail without side effects
- referral commission splits between available and locked balances
- a skip date pauses autopay for exactly that day
- paying the last installment completes the order for good
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session
from emi_autopay.domain.models import AutopayOutcome
from emi_autopay.scheduler.jobs import AutopayScheduler
from tests.constants import TODAY

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "KA",
    "pincode": "560001",
}


def _day(n: int):
    """Business date of plan day ``n``; day 1 is checkout"""
    return TODAY + timedelta(days=n - 1)


def _checkout(client: TestClient, user_id: str, product_id: str = "phone", total_days: int = 10) -> dict:
    response = client.post(
        "/v1/orders",
        json={
            "user_id": user_id,
            "product_id": product_id,
            "total_days": total_days,
            "daily_amount_cents": 10_000,
            "payment_method": "WALLET",
            "delivery_address": ADDRESS,
        },
    )
    assert response.status_code == 201
    return response.json()


def _order(client: TestClient, db: Session, order_id: str, user_id: str) -> dict:
    db.expire_all()
    response = client.get(f"/v1/orders/{order_id}", params={"user_id": user_id})
    assert response.status_code == 200
    return response.json()


def _balance(client: TestClient, db: Session, user_id: str) -> dict:
    db.expire_all()
    return client.get("/v1/wallet", params={"user_id": user_id}).json()


@pytest.fixture
def shop(make_user, make_product):
    make_user("ref")
    make_product("phone", price_cents=100_000)
    make_product("earbuds", price_cents=50_000)


def test_wallet_checkout_activates_order(client: TestClient, db: Session, shop, make_user):
    """Wallet checkout pays installment 1 immediately"""
    make_user("buyer", balance_cents=100_000)

    created = _checkout(client, "buyer")

    order = created["order"]
    assert created["first_payment"]["status"] == "SUCCESS"
    assert order["status"] == "ACTIVE"
    assert order["paid_installments"] == 1
    assert order["remaining_cents"] == 90_000
    assert _balance(client, db, "buyer")["available_cents"] == 90_000


def test_short_wallet_fails_autopay_without_side_effects(client: TestClient, db: Session, scheduler: AutopayScheduler, shop, make_user):
    """A day-2 batch with 50 units in the wallet changes nothing"""
    make_user("buyer", balance_cents=15_000, referred_by_id="ref")
    order_id = _checkout(client, "buyer")["order"]["order_id"]
    assert client.post("/v1/autopay/enable-all", json={"user_id": "buyer"}).json()["orders_updated"] == 1
    referrer_before = _balance(client, db, "ref")

    batch = scheduler.manual_trigger("MORNING_6AM", _day(2))

    (outcome,) = batch.user_results[0].outcomes
    assert outcome.status == AutopayOutcome.INSUFFICIENT_BALANCE
    assert batch.total_insufficient_balance == 1
    assert _order(client, db, order_id, "buyer")["order"]["paid_installments"] == 1
    assert _balance(client, db, "buyer")["available_cents"] == 5_000
    assert _balance(client, db, "ref") == referrer_before

    history = client.get("/v1/autopay/history", params={"user_id": "buyer"}).json()
    assert [(i["status"], i["attempt_date"]) for i in history["items"]] == [("INSUFFICIENT_BALANCE", _day(2).isoformat())]


def test_referral_commission_split(client: TestClient, db: Session, shop, make_user):
    """A 100-unit payment earns the referrer 22.5 available and 2.5 locked"""
    make_user("buyer", balance_cents=100_000, referred_by_id="ref")

    created = _checkout(client, "buyer")

    commission = created["first_payment"]["commission"]
    assert commission["calculated"] is True
    assert commission["percentage"] == 25.0
    referrer = _balance(client, db, "ref")
    assert referrer["available_cents"] == 2_250
    assert referrer["locked_cents"] == 250
    assert created["order"]["referrer_id"] == "ref"


def test_skip_date_skips_exactly_that_day(client: TestClient, db: Session, scheduler: AutopayScheduler, shop, make_user):
    make_user("buyer", balance_cents=100_000)
    order_id = _checkout(client, "buyer")["order"]["order_id"]
    client.post("/v1/autopay/enable-all", json={"user_id": "buyer"})
    client.post(f"/v1/autopay/orders/{order_id}/skip-dates", json={"user_id": "buyer", "dates": [_day(2).isoformat()]})

    skipped = scheduler.manual_trigger("MORNING_6AM", _day(2))
    paid = scheduler.manual_trigger("MORNING_6AM", _day(3))

    assert skipped.total_skipped == 1
    assert skipped.total_success == 0
    assert paid.total_success == 1

    db.expire_all()
    schedule = client.get(f"/v1/orders/{order_id}/schedule", params={"user_id": "buyer"}).json()["installments"]
    assert [(i["installment_number"], i["status"]) for i in schedule[:3]] == [(1, "PAID"), (2, "PAID"), (3, "PENDING")]
    assert schedule[1]["paid_date"] == _day(3).isoformat()

    history = client.get("/v1/autopay/history", params={"user_id": "buyer"}).json()
    assert [i["status"] for i in history["items"]] == ["SUCCESS", "SKIPPED"]


def test_final_installment_completes_order(client: TestClient, db: Session, scheduler: AutopayScheduler, shop, make_user):
    """Completed orders drop out of autopay even with the flag still on"""
    make_user("buyer", balance_cents=50_000)
    order_id = _checkout(client, "buyer", product_id="earbuds", total_days=5)["order"]["order_id"]
    client.post("/v1/autopay/enable-all", json={"user_id": "buyer"})

    for n in range(2, 6):
        assert scheduler.manual_trigger("MORNING_6AM", _day(n)).total_success == 1

    order = _order(client, db, order_id, "buyer")["order"]
    assert order["status"] == "COMPLETED"
    assert order["completed_at"] is not None
    assert order["remaining_cents"] == 0
    assert order["autopay_enabled"] is True

    after = scheduler.manual_trigger("MORNING_6AM", _day(6))
    assert after.users == 1
    assert after.total_processed == 0
    assert _balance(client, db, "buyer")["available_cents"] == 0


def test_paid_total_never_exceeds_price(client: TestClient, db: Session, scheduler: AutopayScheduler, shop, make_user):
    """Extra batch runs and manual payments cannot overpay an order"""
    make_user("buyer", balance_cents=200_000)
    order_id = _checkout(client, "buyer", product_id="earbuds", total_days=5)["order"]["order_id"]
    client.post("/v1/autopay/enable-all", json={"user_id": "buyer"})

    for n in range(2, 9):
        scheduler.manual_trigger("MORNING_6AM", _day(n))
        scheduler.manual_trigger("EVENING_6PM", _day(n))

    order = _order(client, db, order_id, "buyer")["order"]
    assert order["total_paid_cents"] == 50_000
    assert order["paid_installments"] == 5
    assert _balance(client, db, "buyer")["available_cents"] == 150_000

    response = client.post(f"/v1/orders/{order_id}/pay", json={"user_id": "buyer"})
    assert response.status_code == 409
