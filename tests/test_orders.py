from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta


def place_order(client, headers, items, **extra):
    payload = {"items": items, "deliveryAddress": "KG 11 Ave, Kigali", **extra}
    return client.post("/api/orders", json=payload, headers=headers)


def test_order_end_to_end(client, farmer, customer, create_product):
    farmer_user, farmer_headers = farmer
    product = create_product(farmer_headers, price=3200, stock=50)
    customer_user, customer_headers = customer

    response = place_order(client, customer_headers, [{"productId": product["id"], "quantity": 2}])
    assert response.status_code == 200
    order = response.json()
    assert order["total"] == 6400
    assert order["status"] == "pending"
    assert order["farmerId"] == farmer_user["id"]
    assert order["customerId"] == customer_user["id"]
    assert order["customerName"] == "Alice Buyer"
    assert order["customerPhone"] == "+250788111111"
    assert order["items"] == [{"productId": product["id"], "productName": "Free-range eggs", "quantity": 2, "price": 3200}]

    listed = client.get("/api/orders", params={"farmerId": farmer_user["id"]}, headers=farmer_headers).json()
    assert [o["id"] for o in listed] == [order["id"]]
    assert listed[0]["items"] == order["items"]


def test_stock_is_not_reserved(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers, stock=50)
    _, headers = customer
    place_order(client, headers, [{"productId": product["id"], "quantity": 5}])
    assert client.get(f"/api/products/{product['id']}").json()["stock"] == 50


def test_server_prices_the_order(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers, price=3200)
    _, headers = customer
    response = place_order(client, headers, [{"productId": product["id"], "quantity": 2, "price": 1}], total=2)
    assert response.status_code == 200
    assert response.json()["total"] == 6400
    assert response.json()["items"][0]["price"] == 3200


def test_estimated_delivery_two_days_out(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers)
    _, headers = customer
    order = place_order(client, headers, [{"productId": product["id"], "quantity": 1}]).json()
    created = datetime.fromisoformat(order["createdAt"].replace("Z", "+00:00"))
    estimated = datetime.fromisoformat(order["estimatedDelivery"].replace("Z", "+00:00"))
    assert estimated - created == timedelta(days=2)


def test_order_requires_token(client):
    response = place_order(client, {}, [{"productId": "x", "quantity": 1}])
    assert response.status_code == 401


def test_order_validation(client, customer):
    _, headers = customer
    assert place_order(client, headers, []).status_code == 400
    assert place_order(client, headers, [{"productId": "x", "quantity": 0}]).status_code == 400
    assert place_order(client, headers, [{"productId": "missing", "quantity": 1}]).status_code == 400


def test_order_rejects_inactive_product(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers)
    client.put(f"/api/products/{product['id']}", json={"isActive": False}, headers=farmer_headers)
    _, headers = customer
    assert place_order(client, headers, [{"productId": product["id"], "quantity": 1}]).status_code == 400


def test_single_order_must_have_one_farmer(client, farmer, customer, admin_headers, create_product):
    _, farmer_headers = farmer
    mine = create_product(farmer_headers)
    theirs = create_product(admin_headers, farmerId="farmer-1", name="Compost", category="manure", price=500, unit="bag")
    _, headers = customer
    response = place_order(client, headers, [
        {"productId": mine["id"], "quantity": 1},
        {"productId": theirs["id"], "quantity": 1},
    ])
    assert response.status_code == 400
    mismatch = place_order(client, headers, [{"productId": mine["id"], "quantity": 1}], farmerId="farmer-1")
    assert mismatch.status_code == 400
    assert client.get("/api/orders", headers=headers).json() == []


def test_checkout_partitions_by_farmer(client, farmer, customer, admin_headers, create_product):
    farmer_user, farmer_headers = farmer
    eggs = create_product(farmer_headers, price=3200)
    broiler = create_product(farmer_headers, name="Broiler", category="chicken", price=9000, unit="bird")
    compost = create_product(admin_headers, farmerId="farmer-1", name="Compost", category="manure", price=500, unit="bag")
    customer_user, headers = customer

    response = client.post("/api/orders/checkout", json={
        "items": [
            {"productId": eggs["id"], "quantity": 2, "farmerId": farmer_user["id"]},
            {"productId": compost["id"], "quantity": 3},
            {"productId": broiler["id"], "quantity": 1},
        ],
        "deliveryAddress": "KG 11 Ave, Kigali",
        "notes": "Call on arrival",
    }, headers=headers)
    assert response.status_code == 200
    orders = response.json()
    assert [o["farmerId"] for o in orders] == [farmer_user["id"], "farmer-1"]
    assert orders[0]["total"] == 2 * 3200 + 9000
    assert [i["productId"] for i in orders[0]["items"]] == [eggs["id"], broiler["id"]]
    assert orders[1]["total"] == 1500
    assert all(o["notes"] == "Call on arrival" and o["status"] == "pending" for o in orders)

    mine = client.get("/api/orders", params={"customerId": customer_user["id"]}, headers=headers).json()
    assert {o["id"] for o in mine} == {o["id"] for o in orders}


def test_checkout_is_all_or_nothing(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    eggs = create_product(farmer_headers)
    _, headers = customer
    response = client.post("/api/orders/checkout", json={
        "items": [{"productId": eggs["id"], "quantity": 1}, {"productId": "missing", "quantity": 1}],
        "deliveryAddress": "Kigali",
    }, headers=headers)
    assert response.status_code == 400
    assert client.get("/api/orders", headers=headers).json() == []


def test_two_customers_same_farmer(client, farmer, customer, signup, create_product):
    farmer_user, farmer_headers = farmer
    product = create_product(farmer_headers, price=3200)
    _, first = customer
    _, second = signup("bob@shop.rw", name="Bob Buyer")

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [
            pool.submit(place_order, client, headers, [{"productId": product["id"], "quantity": quantity}])
            for headers, quantity in ((first, 2), (second, 3))
        ]
        responses = [f.result() for f in futures]
    assert [r.status_code for r in responses] == [200, 200]
    a, b = (r.json() for r in responses)
    assert a["id"] != b["id"]
    assert a["total"] == 6400
    assert b["total"] == 9600
    listed = client.get("/api/orders", params={"farmerId": farmer_user["id"]}, headers=farmer_headers).json()
    assert {o["id"]: o["total"] for o in listed} == {a["id"]: 6400, b["id"]: 9600}


def test_get_order(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers)
    _, headers = customer
    order = place_order(client, headers, [{"productId": product["id"], "quantity": 1}]).json()
    assert client.get(f"/api/orders/{order['id']}", headers=headers).json() == order
    assert client.get("/api/orders/nope", headers=headers).status_code == 404


def test_farmer_updates_status(client, farmer, customer, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers)
    _, headers = customer
    order = place_order(client, headers, [{"productId": product["id"], "quantity": 1}]).json()

    response = client.put(f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=farmer_headers)
    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert client.get(f"/api/orders/{order['id']}", headers=headers).json()["status"] == "confirmed"


def test_status_update_rules(client, farmer, customer, admin_headers, create_product):
    _, farmer_headers = farmer
    product = create_product(farmer_headers)
    _, headers = customer
    order = place_order(client, headers, [{"productId": product["id"], "quantity": 1}]).json()
    url = f"/api/orders/{order['id']}/status"

    assert client.put(url, json={"status": "shipped"}, headers=headers).status_code == 403
    assert client.put(url, json={"status": "lost"}, headers=farmer_headers).status_code == 400
    assert client.put(url, json={"status": "delivered"}, headers=admin_headers).status_code == 200
    assert client.put("/api/orders/nope/status", json={"status": "shipped"}, headers=admin_headers).status_code == 404
