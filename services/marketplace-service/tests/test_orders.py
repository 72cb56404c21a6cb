from decimal import Decimal

from sqlalchemy import event, update

from database import SessionLocal
from models import Earning, EarningStatus, Order, OrderStatus, Product


def test_create_order_freezes_total_price(client, db, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.tomatoes_id, "quantity": 2.5, "notes": "Deliver before noon"},
        headers=headers["buyer"],
    )

    assert response.status_code == 201
    order = response.json()
    assert order["status"] == "PENDING"
    assert order["totalPrice"] == 2125.0
    assert order["buyerId"] == seed.buyer_id
    assert order["product"]["farmer"]["id"] == seed.farmer_id
    assert order["payments"] == []

    product = db.query(Product).filter(Product.id == seed.tomatoes_id).one()
    assert product.quantity == Decimal("97.5")

    # A later price change does not touch existing orders
    product.price_per_unit = Decimal("2000.00")
    db.commit()

    again = client.get(f"/orders/{order['id']}", headers=headers["buyer"])
    assert again.json()["totalPrice"] == 2125.0


def test_order_exceeding_stock_persists_nothing(client, db, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.tomatoes_id, "quantity": 101},
        headers=headers["buyer"],
    )

    assert response.status_code == 400
    assert response.json() == {"error": "Insufficient product quantity", "code": "invalid_quantity"}
    assert db.query(Order).count() == 0
    product = db.query(Product).filter(Product.id == seed.tomatoes_id).one()
    assert product.quantity == Decimal("100")


def test_stock_taken_between_check_and_reserve_persists_nothing(client, db, headers, seed):
    def sell_out_first(orm_execute_state):
        if orm_execute_state.is_update and orm_execute_state.bind_mapper.class_ is Product:
            orm_execute_state.session.connection().execute(
                update(Product.__table__).where(Product.__table__.c.id == seed.tomatoes_id).values(quantity=1)
            )

    event.listen(SessionLocal, "do_orm_execute", sell_out_first)
    try:
        response = client.post(
            "/orders",
            json={"productId": seed.tomatoes_id, "quantity": 2},
            headers=headers["buyer"],
        )
    finally:
        event.remove(SessionLocal, "do_orm_execute", sell_out_first)

    assert response.status_code == 400
    assert response.json() == {"error": "Insufficient product quantity", "code": "invalid_quantity"}
    assert db.query(Order).count() == 0
    product = db.query(Product).filter(Product.id == seed.tomatoes_id).one()
    assert product.quantity == Decimal("100")


def test_quantity_finer_than_stored_precision_rejected(client, db, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.tomatoes_id, "quantity": "1.0005"},
        headers=headers["buyer"],
    )

    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"
    assert response.json()["details"][0]["field"] == "quantity"
    assert db.query(Order).count() == 0


def test_total_price_matches_stored_quantity(client, db, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.tomatoes_id, "quantity": "1.125"},
        headers=headers["buyer"],
    )

    assert response.status_code == 201
    order = db.query(Order).filter(Order.id == response.json()["id"]).one()
    assert order.quantity == Decimal("1.125")
    assert order.total_price == Decimal("850.00") * order.quantity


def test_order_for_unavailable_product_rejected(client, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.yams_id, "quantity": 1},
        headers=headers["buyer"],
    )
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_quantity"


def test_order_for_unknown_product(client, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": "no-such-product", "quantity": 1},
        headers=headers["buyer"],
    )
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_non_positive_quantity_is_a_validation_error(client, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.tomatoes_id, "quantity": 0},
        headers=headers["buyer"],
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "validation_error"
    assert body["details"][0]["field"] == "quantity"


def test_only_buyers_place_orders(client, headers, seed):
    response = client.post(
        "/orders",
        json={"productId": seed.tomatoes_id, "quantity": 1},
        headers=headers["farmer"],
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_requests_without_token_are_unauthorized(client, headers, seed):
    assert client.get("/orders").status_code == 401
    response = client.get("/orders", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401
    assert response.json() == {"error": "Invalid token", "code": "unauthorized"}


def test_order_visible_to_buyer_and_farmer_only(client, headers, place_order):
    order = place_order()

    assert client.get(f"/orders/{order['id']}", headers=headers["buyer"]).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=headers["farmer"]).status_code == 200
    assert client.get(f"/orders/{order['id']}", headers=headers["other_buyer"]).status_code == 403
    assert client.get(f"/orders/{order['id']}", headers=headers["other_farmer"]).status_code == 403
    assert client.get("/orders/missing", headers=headers["buyer"]).status_code == 404


def test_order_listings(client, headers, place_order):
    first = place_order(quantity=1)
    second = place_order(quantity=3)

    buyer_orders = client.get("/orders", headers=headers["buyer"]).json()
    assert {o["id"] for o in buyer_orders} == {first["id"], second["id"]}

    assert client.get("/orders", headers=headers["other_buyer"]).json() == []

    farmer_orders = client.get("/orders/farmer/my-orders", headers=headers["farmer"]).json()
    assert {o["id"] for o in farmer_orders} == {first["id"], second["id"]}
    assert client.get("/orders/farmer/my-orders", headers=headers["other_farmer"]).json() == []
    assert client.get("/orders/farmer/my-orders", headers=headers["buyer"]).status_code == 403


def test_order_cannot_be_marked_paid_by_hand(client, db, headers, place_order):
    order = place_order()

    for who in ("buyer", "farmer"):
        response = client.put(
            f"/orders/{order['id']}/status", json={"status": "PAID"}, headers=headers[who]
        )
        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    assert db.query(Order).filter(Order.id == order["id"]).one().status == OrderStatus.PENDING


def test_only_farmer_confirms(client, headers, place_order):
    order = place_order()

    response = client.put(
        f"/orders/{order['id']}/status", json={"status": "CONFIRMED"}, headers=headers["buyer"]
    )
    assert response.status_code == 409

    response = client.put(
        f"/orders/{order['id']}/status", json={"status": "CONFIRMED"}, headers=headers["farmer"]
    )
    assert response.status_code == 200
    assert response.json()["status"] == "CONFIRMED"


def test_cancel_returns_stock(client, db, headers, place_order, seed):
    order = place_order(quantity=4)

    response = client.put(
        f"/orders/{order['id']}/status", json={"status": "CANCELLED"}, headers=headers["buyer"]
    )
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"

    db.expire_all()
    assert db.query(Product).filter(Product.id == seed.tomatoes_id).one().quantity == Decimal("100")

    # Terminal
    response = client.put(
        f"/orders/{order['id']}/status", json={"status": "PENDING"}, headers=headers["buyer"]
    )
    assert response.status_code == 409


def test_third_party_cannot_change_status(client, headers, place_order):
    order = place_order()
    response = client.put(
        f"/orders/{order['id']}/status", json={"status": "CANCELLED"}, headers=headers["other_buyer"]
    )
    assert response.status_code == 403


def test_unknown_status_is_rejected(client, headers, place_order):
    order = place_order()
    response = client.put(
        f"/orders/{order['id']}/status", json={"status": "TELEPORTED"}, headers=headers["farmer"]
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_delivery_makes_earning_withdrawable(client, db, headers, make_order, seed):
    order_id = make_order(status=OrderStatus.PAID)
    db.add(Earning(
        farmer_id=seed.farmer_id,
        order_id=order_id,
        product_id=seed.tomatoes_id,
        amount=Decimal("1700.00"),
        quantity_sold=Decimal("2"),
        status=EarningStatus.PENDING,
    ))
    db.commit()

    shipped = client.put(f"/orders/{order_id}/status", json={"status": "SHIPPED"}, headers=headers["farmer"])
    assert shipped.status_code == 200

    delivered = client.put(f"/orders/{order_id}/status", json={"status": "DELIVERED"}, headers=headers["buyer"])
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "DELIVERED"

    db.expire_all()
    earning = db.query(Earning).filter(Earning.order_id == order_id).one()
    assert earning.status == EarningStatus.COMPLETED
