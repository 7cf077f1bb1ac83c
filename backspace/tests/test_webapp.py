import datetime as dt
import unittest
from decimal import Decimal

from backspace.tests.support import FakeClock
from backspace.venue.system import VenueSystem
from backspace.webapp import create_app


class WebappTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(dt.datetime(2026, 10, 19, 9, 0))
        self.system = VenueSystem(clock=self.clock)
        self.app = create_app(system=self.system)
        self.app.config["TESTING"] = True
        self.client = self.app.test_client()

        self.customer = self._post("/api/customers", {"name": "Mona Adel", "phone": "0100"})
        self.desk = self._post(
            "/api/resources", {"name": "Desk 1", "resource_type": "desk", "rate_per_hour": "50"}
        )
        self.coffee = self._post(
            "/api/inventory", {"name": "Coffee", "price": "10", "quantity": 5, "category": "beverage"}
        )

    def tearDown(self) -> None:
        self.system.close()

    def _post(self, url: str, payload: dict, status: int = 201) -> dict:
        response = self.client.post(url, json=payload)
        self.assertEqual(response.status_code, status, response.get_data(as_text=True))
        return response.get_json()

    def _start_session(self) -> dict:
        return self._post(
            "/api/sessions",
            {"customer_id": self.customer["id"], "resource_id": self.desk["id"]},
        )

    def test_money_is_rendered_as_fixed_strings(self) -> None:
        self.assertEqual(self.desk["rate_per_hour"], "50.00")
        self.assertEqual(self.customer["balance"], "0.00")

    def test_session_checkout_flow(self) -> None:
        session = self._start_session()
        self.assertEqual(session["status"], "active")

        response = self.client.post(
            f"/api/sessions/{session['id']}/items",
            json={"item_id": self.coffee["id"], "quantity": 2},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["inventory_total"], "20.00")

        active = self.client.get("/api/sessions").get_json()
        self.assertEqual([row["id"] for row in active], [session["id"]])

        self.clock.advance(minutes=90)
        invoice = self._post(f"/api/sessions/{session['id']}/end", {}, status=200)
        self.assertEqual(invoice["invoice_number"], "INV-2026-00001")
        self.assertEqual(invoice["total"], "95.00")
        self.assertEqual(invoice["status"], "unpaid")
        self.assertEqual(len(invoice["line_items"]), 2)

        paid = self._post(
            f"/api/invoices/{invoice['id']}/payments",
            {"amount": 95, "method": "card"},
            status=200,
        )
        self.assertEqual(paid["status"], "paid")
        self.assertEqual(paid["paid_date"], "2026-10-19T10:30:00")

        customer = self.client.get(f"/api/customers/{self.customer['id']}").get_json()
        self.assertEqual(customer["balance"], "0.00")
        self.assertEqual(customer["total_spent"], "95.00")
        self.assertEqual(len(customer["invoices"]), 1)

    def test_bulk_payment_endpoint(self) -> None:
        first = self._post(
            "/api/invoices",
            {
                "customer_id": self.customer["id"],
                "items": [{"description": "Printing", "quantity": 4, "rate": "10"}],
            },
        )
        second = self._post(
            "/api/invoices",
            {
                "customer_id": self.customer["id"],
                "items": [{"description": "Locker", "rate": "40"}],
            },
        )
        result = self._post(
            "/api/payments/bulk",
            {"invoice_ids": [first["id"], second["id"]], "amount": "50", "method": "cash"},
            status=200,
        )
        self.assertEqual(
            [(row["invoice_id"], row["amount"], row["status"]) for row in result["allocations"]],
            [(first["id"], "40.00", "paid"), (second["id"], "10.00", "partially_paid")],
        )
        self.assertEqual(result["unallocated"], "0.00")

        unpaid = self.client.get("/api/invoices?status=partially_paid").get_json()
        self.assertEqual([row["id"] for row in unpaid], [second["id"]])

    def test_error_responses(self) -> None:
        response = self.client.get("/api/customers/999")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json()["error"]["code"], "NOT_FOUND")

        self._start_session()
        response = self.client.post(
            "/api/sessions", json={"customer_id": self.customer["id"], "resource_id": self.desk["id"]}
        )
        self.assertEqual(response.status_code, 409)
        body = response.get_json()
        self.assertEqual(body["error"]["code"], "CONFLICT")
        self.assertTrue(body["error"]["message"])

        response = self.client.post("/api/resources", json={"name": "Sofa"})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"]["code"], "VALIDATION")

        response = self.client.post(
            "/api/payments/bulk", json={"invoice_ids": ["x"], "amount": "5", "method": "cash"}
        )
        self.assertEqual(response.status_code, 400)

        response = self.client.post("/api/customers", json=["not", "an", "object"])
        self.assertEqual(response.status_code, 400)

    def test_collaborator_updates(self) -> None:
        response = self.client.patch(f"/api/resources/{self.desk['id']}", json={"rate_per_hour": "60"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["rate_per_hour"], "60.00")

        response = self.client.post(f"/api/inventory/{self.coffee['id']}/adjust", json={"delta": -2})
        self.assertEqual(response.get_json()["quantity"], 3)

        response = self.client.delete(f"/api/resources/{self.desk['id']}")
        self.assertEqual(response.status_code, 204)

        response = self.client.put("/api/settings", json={"company": {"name": "Backspace"}})
        self.assertEqual(response.get_json(), {"company": {"name": "Backspace"}})

    def test_stale_sweep_endpoint(self) -> None:
        session = self._start_session()
        self.clock.advance(hours=13)
        invoices = self._post("/api/sessions/close-stale", {}, status=200)
        self.assertEqual([invoice["session_id"] for invoice in invoices], [session["id"]])
        self.assertEqual(invoices[0]["total"], "650.00")

        response = self.client.post("/api/sessions/close-stale", json={"max_hours": "soon"})
        self.assertEqual(response.status_code, 400)

    def test_money_provider_formats_unquantized_decimals(self) -> None:
        self.assertEqual(self.app.json.dumps({"amount": Decimal("2.5")}), '{"amount": "2.50"}')
        self.assertEqual(self.app.json.dumps([Decimal("-0.005")]), '["-0.01"]')

    def test_out_of_range_amount_is_rejected(self) -> None:
        invoice = self._post(
            "/api/invoices",
            {"customer_id": self.customer["id"], "items": [{"description": "Locker", "rate": "40"}]},
        )
        response = self.client.post(
            f"/api/invoices/{invoice['id']}/payments", json={"amount": "1e30", "method": "cash"}
        )
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json()["error"]["code"], "VALIDATION")

        response = self.client.post(
            "/api/resources", json={"name": "Desk 2", "resource_type": "desk", "rate_per_hour": "1e30"}
        )
        self.assertEqual(response.status_code, 400)

    def test_patch_rejects_identifier_fields(self) -> None:
        for url, field in (
            (f"/api/customers/{self.customer['id']}", "customer_id"),
            (f"/api/resources/{self.desk['id']}", "resource_id"),
            (f"/api/inventory/{self.coffee['id']}", "item_id"),
        ):
            with self.subTest(url=url):
                response = self.client.patch(url, json={field: 5})
                self.assertEqual(response.status_code, 400)
                self.assertEqual(response.get_json()["error"]["code"], "VALIDATION")

    def test_identifiers_must_be_integers(self) -> None:
        response = self.client.post(
            "/api/sessions", json={"customer_id": 1.7, "resource_id": self.desk["id"]}
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.post(
            "/api/sessions", json={"customer_id": True, "resource_id": self.desk["id"]}
        )
        self.assertEqual(response.status_code, 400)
        response = self.client.post(
            f"/api/inventory/{self.coffee['id']}/adjust", json={"delta": -1.5}
        )
        self.assertEqual(response.status_code, 400)

        session = self._post(
            "/api/sessions",
            {"customer_id": str(self.customer["id"]), "resource_id": self.desk["id"]},
        )
        self.assertEqual(session["customer_id"], self.customer["id"])

    def test_paginated_listings(self) -> None:
        self._post("/api/customers", {"name": "Karim Saleh", "phone": "0101"})
        self._post("/api/customers", {"name": "Nadia Fawzy", "phone": "0102"})

        page = self.client.get("/api/customers/page?page=2&page_size=2&sort_by=name").get_json()
        self.assertEqual(
            {key: page[key] for key in ("total", "page", "page_size", "total_pages")},
            {"total": 3, "page": 2, "page_size": 2, "total_pages": 2},
        )
        self.assertEqual([row["name"] for row in page["items"]], ["Nadia Fawzy"])

        response = self.client.get("/api/customers/page?sort_by=secret")
        self.assertEqual(response.status_code, 400)

        for rate in ("10", "20"):
            self._post(
                "/api/invoices",
                {"customer_id": self.customer["id"], "items": [{"description": "Locker", "rate": rate}]},
            )
        page = self.client.get(
            "/api/invoices/page?search=00002&status=unpaid"
            f"&customer_id={self.customer['id']}"
        ).get_json()
        self.assertEqual([row["invoice_number"] for row in page["items"]], ["INV-2026-00002"])
        self.assertEqual(page["items"][0]["total"], "20.00")

        page = self.client.get("/api/invoices/page?sort_by=total&sort_desc=true").get_json()
        self.assertEqual([row["total"] for row in page["items"]], ["20.00", "10.00"])

    def test_inventory_delete(self) -> None:
        tea = self._post("/api/inventory", {"name": "Tea", "price": "8"})
        response = self.client.delete(f"/api/inventory/{tea['id']}")
        self.assertEqual(response.status_code, 204)
        self.assertEqual(self.client.get(f"/api/inventory/{tea['id']}").status_code, 404)

        session = self._start_session()
        self._post(
            f"/api/sessions/{session['id']}/items",
            {"item_id": self.coffee["id"], "quantity": 1},
            status=200,
        )
        response = self.client.delete(f"/api/inventory/{self.coffee['id']}")
        self.assertEqual(response.status_code, 409)

    def test_subscription_routes(self) -> None:
        subscription = self._post(
            "/api/subscriptions",
            {"customer_id": self.customer["id"], "plan_type": "weekly", "price": "80"},
        )
        url = f"/api/subscriptions/{subscription['id']}"
        self.assertEqual(self.client.get(url).get_json()["price"], "80.00")

        response = self.client.patch(url, json={"price": "95.5"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["price"], "95.50")
        response = self.client.patch(url, json={"end_date": "2026-10-01"})
        self.assertEqual(response.status_code, 400)

        changed = self._post(f"{url}/plan", {"plan_type": "half-monthly"}, status=200)
        self.assertEqual(changed["end_date"], "2026-11-03")
        self._post(f"{url}/plan", {"plan_type": "daily"}, status=400)

        self.assertEqual(self.client.delete(url).status_code, 204)
        self.assertEqual(self.client.get(url).status_code, 404)
        customer = self.client.get(f"/api/customers/{self.customer['id']}").get_json()
        self.assertEqual(customer["customer_type"], "visitor")
        self.assertEqual(customer["subscriptions"], [])

    def test_dashboard(self) -> None:
        self._start_session()
        metrics = self.client.get("/api/dashboard").get_json()
        self.assertEqual(metrics["active_sessions"], 1)
        self.assertEqual(metrics["new_customers_today"], 1)
        self.assertEqual(metrics["today_revenue"], "0.00")


if __name__ == "__main__":
    unittest.main()
