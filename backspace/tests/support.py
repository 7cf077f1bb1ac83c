import datetime as dt
import unittest

from backspace.venue.system import VenueSystem


class FakeClock:
    def __init__(self, start: dt.datetime) -> None:
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += dt.timedelta(**kwargs)


class VenueTestCase(unittest.TestCase):
    """Builds a small venue: one customer, two desks and a stocked snack."""

    def setUp(self) -> None:
        self.clock = FakeClock(dt.datetime(2026, 10, 19, 9, 0))
        self.system = VenueSystem(clock=self.clock)
        self.customer = self.system.register_customer(name="Mona Adel", phone="01000000001")
        self.other_customer = self.system.register_customer(name="Karim Saleh", phone="01000000002")
        self.desk = self.system.create_resource(
            name="Desk 1", resource_type="desk", rate_per_hour="50.00"
        )
        self.room = self.system.create_resource(
            name="Meeting Room", resource_type="room", rate_per_hour="120.00", max_price="400.00"
        )
        self.coffee = self.system.create_inventory_item(
            name="Coffee", price="10.00", quantity=20, category="beverage"
        )

    def tearDown(self) -> None:
        self.system.close()
