import config
from conftest import BUYER_WALLET, FARMER_WALLET
from models import Earning, Order, OrderStatus, Payment, PaymentStatus, PaymentType


def _initiate(client, headers, order_id, wallet=BUYER_WALLET):
    return client.post(
        "/payments/token/initiate",
        json={"orderId": order_id, "walletAddress": wallet},
        headers=headers["buyer"],
    )


def _verify(client, headers, order_id, tx_id, who="buyer"):
    return client.post(
        "/payments/token/verify",
        json={"orderId": order_id, "transactionId": tx_id},
        headers=headers[who],
    )


def test_initiate_returns_transfer_details(client, db, headers, place_order):
    order = place_order(quantity=2)

    response = _initiate(client, headers, order["id"])

    assert response.status_code == 201
    body = response.json()
    assert body["orderId"] == order["id"]
    assert body["amount"] == 1700.0
    assert body["farmerWalletAddress"] == FARMER_WALLET
    assert body["message"] == "Payment record created. Proceed with the token transfer on the client."

    payment = db.query(Payment).filter(Payment.id == body["paymentId"]).one()
    assert payment.type == PaymentType.TOKEN_TRANSFER
    assert payment.status == PaymentStatus.PENDING
    assert payment.wallet_address == BUYER_WALLET
    assert payment.reference is None
    assert db.query(Order).filter(Order.id == order["id"]).one().status == OrderStatus.PAYMENT_PROCESSING


def test_initiate_requires_farmer_wallet(client, db, headers, place_order, seed):
    order = place_order(product_id=seed.peppers_id, quantity=1)

    response = _initiate(client, headers, order["id"])

    assert response.status_code == 404
    assert response.json()["error"] == "Farmer's wallet address not found"
    assert db.query(Payment).count() == 0


def test_verify_confirms_order(client, db, headers, place_order, providers):
    order = place_order(quantity=2)
    _initiate(client, headers, order["id"])
    providers.add_transfer("0xabc123")

    response = _verify(client, headers, order["id"], "0xabc123")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Payment verified and order confirmed"
    assert body["payment"]["status"] == "COMPLETED"
    assert body["payment"]["reference"] == "0xabc123"
    assert body["payment"]["metadata"]["tx_status"] == "success"

    assert db.query(Order).filter(Order.id == order["id"]).one().status == OrderStatus.PAID
    assert db.query(Earning).count() == 1

    again = _verify(client, headers, order["id"], "0xabc123")
    assert again.status_code == 200
    assert again.json()["message"] == "Payment already verified"
    assert db.query(Earning).count() == 1


def test_unconfirmed_transaction_changes_nothing(client, db, headers, place_order, providers):
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.add_transfer("0xpending", tx_status="pending")

    response = _verify(client, headers, order["id"], "0xpending")

    assert response.status_code == 400
    assert response.json()["code"] == "transaction_not_confirmed"
    assert db.query(Payment).one().status == PaymentStatus.PENDING
    assert db.query(Order).filter(Order.id == order["id"]).one().status == OrderStatus.PAYMENT_PROCESSING


def test_transaction_unknown_to_indexer_not_confirmed(client, headers, place_order):
    order = place_order()
    _initiate(client, headers, order["id"])

    response = _verify(client, headers, order["id"], "0xmissing")

    assert response.status_code == 400
    assert response.json()["code"] == "transaction_not_confirmed"


def test_indexer_outage_is_retryable(client, headers, place_order, providers):
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.indexer_status["0xdown"] = 502

    response = _verify(client, headers, order["id"], "0xdown")

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "30"


def test_indexer_body_that_is_not_an_object_is_retryable(client, db, headers, place_order, providers):
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.transactions["0xlist"] = [{"tx_status": "success"}]

    response = _verify(client, headers, order["id"], "0xlist")

    assert response.status_code == 503
    assert response.json()["code"] == "external_service_unavailable"
    assert db.query(Payment).one().status == PaymentStatus.PENDING


def _contract_call(tx_id, contract_id):
    return {
        "tx_id": tx_id,
        "tx_status": "success",
        "tx_type": "contract_call",
        "sender_address": BUYER_WALLET,
        "contract_call": {"contract_id": contract_id, "function_name": "pay"},
    }


def test_contract_call_rejected_without_configured_contract(client, db, headers, place_order, providers,
                                                            monkeypatch):
    monkeypatch.setattr(config, "STACKS_CONTRACT_ADDRESS", None)
    monkeypatch.setattr(config, "STACKS_CONTRACT_NAME", None)
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.transactions["0xcall"] = _contract_call("0xcall", "SP000000000000000000002Q6VF78.anything")

    response = _verify(client, headers, order["id"], "0xcall")

    assert response.status_code == 400
    assert db.query(Payment).one().status == PaymentStatus.PENDING
    assert db.query(Order).filter(Order.id == order["id"]).one().status == OrderStatus.PAYMENT_PROCESSING


def test_contract_call_to_configured_escrow_confirms_order(client, db, headers, place_order, providers,
                                                           monkeypatch):
    monkeypatch.setattr(config, "STACKS_CONTRACT_ADDRESS", FARMER_WALLET)
    monkeypatch.setattr(config, "STACKS_CONTRACT_NAME", "escrow")
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.transactions["0xother"] = _contract_call("0xother", f"{FARMER_WALLET}.other")
    providers.transactions["0xescrow"] = _contract_call("0xescrow", f"{FARMER_WALLET}.escrow")

    assert _verify(client, headers, order["id"], "0xother").status_code == 400

    response = _verify(client, headers, order["id"], "0xescrow")

    assert response.status_code == 200
    assert db.query(Order).filter(Order.id == order["id"]).one().status == OrderStatus.PAID


def test_verify_without_pending_payment(client, headers, place_order, providers):
    order = place_order()
    providers.add_transfer("0xorphan")

    response = _verify(client, headers, order["id"], "0xorphan")

    assert response.status_code == 404
    assert response.json()["error"] == "No pending payment found for this order"


def test_transfer_to_wrong_recipient_rejected(client, db, headers, place_order, providers):
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.add_transfer("0xelsewhere", recipient="SP000000000000000000002Q6VF78")

    response = _verify(client, headers, order["id"], "0xelsewhere")

    assert response.status_code == 400
    assert db.query(Payment).one().status == PaymentStatus.PENDING


def test_transfer_from_other_wallet_rejected(client, db, headers, place_order, providers):
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.add_transfer("0xstranger", sender="SP1HTBVD3JG9C05J7HBJTHGR0GGW7KXW28M5JS8QE")

    response = _verify(client, headers, order["id"], "0xstranger")

    assert response.status_code == 400
    assert db.query(Payment).one().status == PaymentStatus.PENDING


def test_transaction_cannot_pay_two_orders(client, db, headers, place_order, providers):
    first = place_order(quantity=1)
    second = place_order(quantity=1)
    _initiate(client, headers, first["id"])
    _initiate(client, headers, second["id"])
    providers.add_transfer("0xonce")

    assert _verify(client, headers, first["id"], "0xonce").status_code == 200

    response = _verify(client, headers, second["id"], "0xonce")

    assert response.status_code == 409
    assert db.query(Order).filter(Order.id == second["id"]).one().status == OrderStatus.PAYMENT_PROCESSING


def test_verify_on_another_buyers_order_forbidden(client, headers, place_order, providers):
    order = place_order()
    _initiate(client, headers, order["id"])
    providers.add_transfer("0xabc")

    assert _verify(client, headers, order["id"], "0xabc", who="other_buyer").status_code == 403
