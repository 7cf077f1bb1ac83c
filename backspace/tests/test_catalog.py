import unittest
from decimal import Decimal

from backspace.tests.support import VenueTestCase
from backspace.venue import catalog, customers
from backspace.venue.database import Database, apply_patch, next_sequence
from backspace.venue.errors import ConflictError, NotFoundError, ValidationError
from backspace.venue.schemas import ResourcePatch


class PatchTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.db = Database()

    def tearDown(self) -> None:
        self.db.close()

    def test_patch_writes_only_set_fields(self) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO resources(name, resource_type, rate_per_hour) VALUES (?, ?, ?)",
                ("Desk", "desk", Decimal("30.00")),
            )
            written = apply_patch(conn, "resources", 1, ResourcePatch(rate_per_hour="35"))
        self.assertEqual(written, 1)
        row = self.db.connection.execute("SELECT * FROM resources WHERE id = 1").fetchone()
        self.assertEqual(row["name"], "Desk")
        self.assertEqual(row["rate_per_hour"], Decimal("35.00"))

    def test_empty_patch_is_a_no_op(self) -> None:
        with self.db.transaction() as conn:
            self.assertEqual(apply_patch(conn, "resources", 1, ResourcePatch()), 0)

    def test_patch_on_missing_row(self) -> None:
        with self.assertRaises(NotFoundError):
            with self.db.transaction() as conn:
                apply_patch(conn, "resources", 42, ResourcePatch(name="Ghost"))

    def test_sequences_roll_back_with_their_transaction(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.db.transaction() as conn:
                next_sequence(conn, "invoice_2026")
                raise RuntimeError("abort")
        with self.db.transaction() as conn:
            self.assertEqual(next_sequence(conn, "invoice_2026"), 1)


class CollaboratorTestCase(VenueTestCase):
    def test_registry_and_store_lookups(self) -> None:
        with self.system.db.transaction() as conn:
            self.assertEqual(catalog.get_rate(conn, self.room["id"]), Decimal("120.00"))
            self.assertTrue(catalog.is_available(conn, self.room["id"]))
            catalog.set_available(conn, self.room["id"], False)
            self.assertFalse(catalog.is_available(conn, self.room["id"]))
            self.assertEqual(catalog.get_stock(conn, self.coffee["id"]), 20)
            self.assertEqual(catalog.get_price(conn, self.coffee["id"]), Decimal("10.00"))
            with self.assertRaises(NotFoundError):
                catalog.set_available(conn, 999, True)

    def test_spend_never_decreases(self) -> None:
        with self.assertRaises(ValueError):
            with self.system.db.transaction() as conn:
                customers.add_spend(conn, self.customer["id"], Decimal("-1"))
        with self.system.db.transaction() as conn:
            self.assertEqual(
                customers.add_spend(conn, self.customer["id"], Decimal("12.5")), Decimal("12.50")
            )
            self.assertEqual(
                customers.adjust_balance(conn, self.customer["id"], Decimal("-3")), Decimal("-3.00")
            )


class CatalogTestCase(VenueTestCase):
    def test_money_round_trips_exactly(self) -> None:
        item = self.system.create_inventory_item(name="Water", price="0.10", quantity=3)
        self.assertEqual(item["price"], Decimal("0.10"))
        raw = self.system.conn.execute(
            "SELECT typeof(price) AS kind FROM inventory_items WHERE id = ?", (item["id"],)
        ).fetchone()
        self.assertEqual(raw["kind"], "text")

    def test_create_validation(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.create_resource(name="Desk", resource_type="sofa", rate_per_hour="10")
        with self.assertRaises(ValidationError):
            self.system.create_resource(name="Desk", resource_type="desk", rate_per_hour="-1")
        with self.assertRaises(ValidationError):
            self.system.create_inventory_item(name="", price="1")
        with self.assertRaises(ValidationError):
            self.system.create_inventory_item(name="Tea", price="1", quantity=-2)
        with self.assertRaises(ValidationError):
            self.system.register_customer(name="  ", phone="0100")

    def test_update_resource_and_customer(self) -> None:
        resource = self.system.update_resource(self.desk["id"], {"name": "Window Desk"})
        self.assertEqual(resource["name"], "Window Desk")
        self.assertEqual(resource["rate_per_hour"], Decimal("50.00"))
        with self.assertRaises(ValidationError):
            self.system.update_resource(self.desk["id"], {"is_available": False})
        with self.assertRaises(NotFoundError):
            self.system.update_resource(999, {"name": "Ghost"})

        customer = self.system.update_customer(self.customer["id"], {"email": "mona@example.com"})
        self.assertEqual(customer["email"], "mona@example.com")
        self.assertEqual(customer["phone"], "01000000001")

    def test_stock_cannot_go_negative(self) -> None:
        item = self.system.adjust_inventory(item_id=self.coffee["id"], quantity_change=-5)
        self.assertEqual(item["quantity"], 15)
        with self.assertRaises(ConflictError):
            self.system.adjust_inventory(item_id=self.coffee["id"], quantity_change=-16)
        self.assertEqual(self.system.get_inventory_item(self.coffee["id"])["quantity"], 15)

    def test_low_stock_listing(self) -> None:
        self.system.create_inventory_item(name="Biscuits", price="5", quantity=2, min_stock=5)
        low = self.system.list_inventory(low_stock_only=True)
        self.assertEqual([item["name"] for item in low], ["Biscuits"])

    def test_busy_resource_cannot_be_deleted(self) -> None:
        self.system.start_session(customer_id=self.customer["id"], resource_id=self.desk["id"])
        with self.assertRaises(ConflictError):
            self.system.delete_resource(self.desk["id"])
        self.system.delete_resource(self.room["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_resource(self.room["id"])

    def test_customer_with_history_cannot_be_deleted(self) -> None:
        session = self.system.start_session(
            customer_id=self.customer["id"], resource_id=self.desk["id"]
        )
        self.system.end_session(session["id"])
        with self.assertRaises(ConflictError):
            self.system.delete_customer(self.customer["id"])
        self.system.delete_customer(self.other_customer["id"])
        self.assertEqual(len(self.system.list_customers()), 1)

    def test_customer_pages(self) -> None:
        third = self.system.register_customer(name="Nadia Fawzy", phone="01000000003")

        first_page = self.system.list_customers_page(page=1, page_size=2, sort_by="name")
        self.assertEqual(first_page["total"], 3)
        self.assertEqual(first_page["total_pages"], 2)
        self.assertEqual(first_page["page_size"], 2)
        self.assertEqual(
            [row["name"] for row in first_page["items"]], ["Karim Saleh", "Mona Adel"]
        )
        second_page = self.system.list_customers_page(page=2, page_size=2, sort_by="name")
        self.assertEqual(second_page["page"], 2)
        self.assertEqual([row["id"] for row in second_page["items"]], [third["id"]])

        newest = self.system.list_customers_page()
        self.assertEqual(newest["items"][0]["id"], third["id"])
        self.assertEqual(newest["page_size"], 20)

        found = self.system.list_customers_page(search="0000000002")
        self.assertEqual([row["id"] for row in found["items"]], [self.other_customer["id"]])
        self.assertEqual(found["total_pages"], 1)

        clamped = self.system.list_customers_page(page=0, page_size=500)
        self.assertEqual((clamped["page"], clamped["page_size"]), (1, 20))
        with self.assertRaises(ValidationError):
            self.system.list_customers_page(sort_by="password")

    def test_inventory_item_deletion(self) -> None:
        tea = self.system.create_inventory_item(name="Tea", price="8", quantity=4)
        self.system.delete_inventory_item(tea["id"])
        with self.assertRaises(NotFoundError):
            self.system.get_inventory_item(tea["id"])
        with self.assertRaises(NotFoundError):
            self.system.delete_inventory_item(tea["id"])

        session = self.system.start_session(
            customer_id=self.customer["id"], resource_id=self.desk["id"]
        )
        self.system.attach_item(session_id=session["id"], item_id=self.coffee["id"], quantity=1)
        with self.assertRaises(ConflictError):
            self.system.delete_inventory_item(self.coffee["id"])
        self.assertEqual(self.system.get_inventory_item(self.coffee["id"])["quantity"], 19)

    def test_out_of_range_money_is_a_validation_error(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.create_resource(name="Desk 9", resource_type="desk", rate_per_hour="1e30")
        with self.assertRaises(ValidationError):
            self.system.update_inventory_item(self.coffee["id"], {"price": "1e30"})

    def test_updates_reject_unknown_fields(self) -> None:
        with self.assertRaises(ValidationError):
            self.system.update_customer(self.customer["id"], {"customer_id": 5})
        with self.assertRaises(ValidationError):
            self.system.update_resource(self.desk["id"], {"resource_id": 5})
        with self.assertRaises(ValidationError):
            self.system.update_inventory_item(self.coffee["id"], {"item_id": 5})

    def test_customer_lookup(self) -> None:
        self.assertEqual(len(self.customer["human_id"]), 8)
        found = self.system.list_customers(search="karim")
        self.assertEqual([row["id"] for row in found], [self.other_customer["id"]])
        duplicate = self.system.check_customer_duplicate(name="mona adel", phone="0999")
        self.assertEqual(duplicate["id"], self.customer["id"])
        self.assertIsNone(self.system.check_customer_duplicate(name="Nobody", phone="0999"))


class SettingsAndDashboardTestCase(VenueTestCase):
    def test_settings_blob_round_trip(self) -> None:
        self.assertEqual(self.system.get_settings(), {})
        blob = {"company": {"name": "Backspace"}, "regional": {"currency": "EGP"}}
        self.assertEqual(self.system.update_settings(blob), blob)
        self.assertEqual(self.system.get_settings(), blob)

    def test_dashboard_metrics(self) -> None:
        session = self.system.start_session(
            customer_id=self.customer["id"], resource_id=self.desk["id"]
        )
        self.system.start_session(customer_id=self.other_customer["id"], resource_id=self.room["id"])
        self.clock.advance(minutes=60)
        invoice = self.system.end_session(session["id"])
        self.system.apply_payment(invoice_id=invoice["id"], amount="20", method="cash")
        self.system.create_subscription(
            customer_id=self.other_customer["id"], plan_type="weekly", price="80"
        )

        metrics = self.system.dashboard_metrics()
        self.assertEqual(metrics["today_revenue"], Decimal("20.00"))
        self.assertEqual(metrics["active_sessions"], 1)
        self.assertEqual(metrics["new_customers_today"], 2)
        self.assertEqual(metrics["active_subscriptions"], 1)
        self.assertEqual(metrics["outstanding_debt"], Decimal("110.00"))


if __name__ == "__main__":
    unittest.main()
