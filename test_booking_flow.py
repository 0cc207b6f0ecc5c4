import os
import tempfile
import unittest
from datetime import date

os.environ.setdefault("SQLITE_FALLBACK_URL", "sqlite://")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clubhouse import models, schemas
from clubhouse import booking_flow as flow
from clubhouse import folio as ledger
from clubhouse.database import Base
from clubhouse.errors import (
    DayClosed,
    FolioNotSettled,
    InvalidTransition,
    ResourceUnavailable,
    UnknownIdentity,
    VersionConflict,
)
from clubhouse.events import event_sink
from clubhouse.club_settings import DEFAULT_FLOOR_PRICE_RATE, get_default_floor_price_rate, set_club_setting
from clubhouse.rate_store import (
    determine_day_type,
    get_rate_cell,
    get_team_pricing_policy,
    seed_default_identity_types,
    time_slot_for,
)
from clubhouse.resources import ResourceCatalog

# Wednesday
PLAY_DATE = date(2026, 2, 4)
S = models.BookingStatus


def _memory_session():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


class BookingFlowTests(unittest.TestCase):
    def setUp(self):
        self.db = _memory_session()
        seed_default_identity_types(self.db)
        self.db.add(models.RateSheet(
            rule_name="Weekday morning",
            day_type="weekday",
            time_slot="morning",
            prices={"walkin": 800, "member_1": 400},
            reduced_play_policy={"type": "proportional", "rate": 0.6},
            caddy_fee=300,
            cart_fee=200,
            insurance_fee=0,
            priority=0,
            status="active",
        ))
        self.caddy = models.Resource(resource_type=models.ResourceType.caddy, code="C01", status="available")
        self.locker = models.Resource(resource_type=models.ResourceType.locker, code="L01", status="available")
        self.broken_locker = models.Resource(resource_type=models.ResourceType.locker, code="L02", status="maintenance")
        self.db.add_all([self.caddy, self.locker, self.broken_locker])
        self.db.commit()

    def tearDown(self):
        event_sink.clear()
        self.db.close()

    def _create(self, players=None, **overrides):
        values = dict(
            date=PLAY_DATE,
            tee_time="08:00",
            players=players or [
                {"name": "Ana", "identity_code": "walkin"},
                {"name": "Ben", "identity_code": "Walk-In"},
            ],
            created_by="front-desk",
        )
        values.update(overrides)
        return flow.create_booking(self.db, schemas.BookingCreate(**values))

    def _checked_in(self, **resources):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id)
        return flow.check_in_booking(self.db, booking.id, schemas.CheckInResources(**resources))

    def _folio(self, booking):
        self.db.expire_all()
        return ledger.get_folio(self.db, booking.assigned_resources["folio_id"])

    def test_create_normalizes_players_and_starts_pending(self):
        booking = self._create()
        self.assertEqual(booking.status, S.pending)
        self.assertTrue(booking.order_no.startswith("ORD20260204"))
        self.assertEqual([p["identity_code"] for p in booking.players], ["walkin", "walkin"])
        self.assertEqual(booking.status_history[0]["status"], "pending")

    def test_create_rejects_inactive_identity(self):
        with self.assertRaises(UnknownIdentity):
            self._create(players=[{"name": "X", "identity_code": "astronaut"}])

    def test_create_rejects_closed_day(self):
        self.db.add(models.SpecialDate(date=PLAY_DATE, date_type="closed", date_name="Course maintenance", is_closed=True))
        self.db.commit()
        with self.assertRaises(DayClosed):
            self._create()

    def test_invalid_transitions(self):
        booking = self._create()
        with self.assertRaises(InvalidTransition):
            flow.check_in_booking(self.db, booking.id)
        with self.assertRaises(InvalidTransition):
            flow.complete_booking(self.db, booking.id)

        flow.cancel_booking(self.db, booking.id, reason="Rain")
        with self.assertRaises(InvalidTransition):
            flow.confirm_booking(self.db, booking.id)

    def test_status_history_is_appended(self):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id, by="desk")
        booking = flow.cancel_booking(self.db, booking.id, reason="Guest request", by="desk")
        self.assertEqual([h["status"] for h in booking.status_history], ["pending", "confirmed", "cancelled"])
        self.assertEqual(booking.status_history[-1]["note"], "Guest request")

    def test_expected_version_mismatch(self):
        booking = self._create()
        with self.assertRaises(VersionConflict):
            flow.confirm_booking(self.db, booking.id, expected_version=booking.version + 5)
        confirmed = flow.confirm_booking(self.db, booking.id, expected_version=booking.version)
        self.assertEqual(confirmed.status, S.confirmed)

    def test_check_in_binds_resources_and_posts_charges(self):
        booking = self._checked_in(caddy_id=self.caddy.id, lockers=[self.locker.id])

        self.assertEqual(booking.status, S.checked_in)
        self.assertEqual(booking.assigned_resources["caddy_id"], self.caddy.id)
        self.assertEqual(booking.assigned_resources["lockers"], [self.locker.id])

        folio = self._folio(booking)
        types = sorted(c.charge_type for c in folio.charges)
        self.assertEqual(types, ["caddy_fee", "green_fee", "green_fee"])
        self.assertEqual(booking.total_fee, 1900.0)
        self.assertEqual(booking.pending_fee, 1900.0)

        self.db.refresh(self.caddy)
        self.assertEqual(self.caddy.status, "occupied")
        self.assertEqual(self.caddy.booking_id, booking.id)

    def test_unavailable_locker_binds_nothing(self):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id)

        with self.assertRaises(ResourceUnavailable):
            flow.check_in_booking(
                self.db, booking.id,
                schemas.CheckInResources(caddy_id=self.caddy.id, lockers=[self.broken_locker.id]),
            )

        self.db.expire_all()
        booking = flow.get_booking(self.db, booking.id)
        self.assertEqual(booking.status, S.confirmed)
        self.assertIsNone(booking.assigned_resources)
        self.assertEqual(self.db.query(models.Folio).count(), 0)
        self.assertEqual(self.db.get(models.Resource, self.caddy.id).status, "available")

    def test_resource_held_by_another_booking(self):
        self._checked_in(caddy_id=self.caddy.id)
        other = self._create()
        flow.confirm_booking(self.db, other.id)
        with self.assertRaises(ResourceUnavailable):
            flow.check_in_booking(self.db, other.id, schemas.CheckInResources(caddy_id=self.caddy.id))

    def test_check_in_reuses_existing_folio(self):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id)
        folio = ledger.open_folio(self.db, booking_id=booking.id, guest_name="Ana")
        self.db.commit()
        ledger.record_charge(self.db, folio.id, "green_fee", 800, "prepaid", player_name="Ana")
        ledger.record_payment(self.db, folio.id, 800, "transfer")

        booking = flow.check_in_booking(self.db, booking.id)

        self.assertEqual(booking.assigned_resources["folio_id"], folio.id)
        self.assertEqual(self.db.query(models.Folio).count(), 1)
        green_fees = [c for c in self._folio(booking).charges if c.charge_type == "green_fee"]
        self.assertEqual(len(green_fees), 1)

    def test_complete_requires_settled_folio(self):
        booking = self._checked_in(caddy_id=self.caddy.id)
        with self.assertRaises(FolioNotSettled):
            flow.complete_booking(self.db, booking.id)

        folio_id = booking.assigned_resources["folio_id"]
        ledger.record_payment(self.db, folio_id, booking.pending_fee, "bank_card")
        ledger.settle_folio(self.db, folio_id)
        booking = flow.complete_booking(self.db, booking.id)

        self.assertEqual(booking.status, S.completed)
        self.assertEqual(booking.pending_fee, 0.0)
        self.db.refresh(self.caddy)
        self.assertEqual(self.caddy.status, "available")
        self.assertIsNone(self.caddy.booking_id)

    def test_complete_after_forced_settle(self):
        booking = self._checked_in()
        ledger.settle_folio(self.db, booking.assigned_resources["folio_id"], force=True)
        booking = flow.complete_booking(self.db, booking.id)
        self.assertEqual(booking.status, S.completed)
        self.assertTrue(self._folio(booking).forced)

    def test_reduced_play_replaces_green_fees(self):
        booking = self._checked_in()
        booking = flow.record_holes_played(self.db, booking.id, 9)

        folio = self._folio(booking)
        voided = [c for c in folio.charges if c.status == models.ChargeStatus.voided]
        reduced = [c for c in folio.charges if c.charge_type == "reduced_play"]
        self.assertEqual(len(voided), 2)
        self.assertEqual([c.amount for c in reduced], [480.0, 480.0])
        self.assertEqual(booking.total_fee, 960.0)
        self.assertEqual(booking.holes_played, 9)

        with self.assertRaises(InvalidTransition):
            flow.record_holes_played(self.db, booking.id, 9)

    def test_extra_holes_post_add_on(self):
        booking = self._checked_in()
        booking = flow.record_holes_played(self.db, booking.id, 27)

        add_ons = [c for c in self._folio(booking).charges if c.charge_type == "add_on"]
        self.assertEqual([c.amount for c in add_ons], [400.0, 400.0])
        self.assertEqual(booking.total_fee, 2400.0)

    def test_unpriced_player_is_billed_zero_with_warning(self):
        booking = self._create(players=[{"name": "Coach", "identity_code": "coach"}])
        flow.confirm_booking(self.db, booking.id)
        booking = flow.check_in_booking(self.db, booking.id)

        green_fee = self._folio(booking).charges[0]
        self.assertEqual(green_fee.amount, 0.0)
        self.assertEqual(green_fee.warning, "rate_not_configured")

    def test_team_size_discount_applies_at_check_in(self):
        from clubhouse.rate_store import save_team_pricing_policy
        from clubhouse.rates import TeamPricingPolicy, TeamTier

        save_team_pricing_policy(self.db, TeamPricingPolicy(
            tiers=(TeamTier(min_players=8, max_players=None, discount_rate=0.9, label="Group"),),
            floor_price_rate=0.6,
        ))
        booking = self._create(team_size=10)
        flow.confirm_booking(self.db, booking.id)
        booking = flow.check_in_booking(self.db, booking.id)

        green_fees = [c.amount for c in self._folio(booking).charges if c.charge_type == "green_fee"]
        self.assertEqual(green_fees, [720.0, 720.0])

    def test_reduced_play_on_hand_posted_green_fee(self):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id)
        folio = ledger.open_folio(self.db, booking_id=booking.id, guest_name="Ana")
        self.db.commit()
        ledger.record_charge(self.db, folio.id, "green_fee", 800, "front_desk")
        ledger.record_charge(self.db, folio.id, "green_fee", 0, "front_desk", description="Comp round")

        booking = flow.check_in_booking(self.db, booking.id)
        booking = flow.record_holes_played(self.db, booking.id, 9)

        charges = [(c.charge_type, c.amount, c.status.value) for c in self._folio(booking).charges]
        self.assertEqual(charges, [
            ("green_fee", 800.0, "voided"),
            ("green_fee", 0.0, "posted"),
            ("reduced_play", 480.0, "posted"),
        ])
        self.assertEqual(booking.total_fee, 480.0)

    def test_deactivated_identity_is_flagged_at_check_in(self):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id)
        walkin = self.db.query(models.IdentityType).filter(models.IdentityType.code == "walkin").one()
        walkin.status = "inactive"
        self.db.commit()

        booking = flow.check_in_booking(self.db, booking.id)

        green_fees = [c for c in self._folio(booking).charges if c.charge_type == "green_fee"]
        self.assertEqual([c.amount for c in green_fees], [800.0, 800.0])
        self.assertEqual([c.warning for c in green_fees], ["identity_inactive", "identity_inactive"])

    def test_change_resources_swaps_caddy(self):
        booking = self._checked_in(caddy_id=self.caddy.id, lockers=[self.locker.id])
        new_caddy = models.Resource(resource_type=models.ResourceType.caddy, code="C02", status="available")
        self.db.add(new_caddy)
        self.db.commit()
        folio_id = booking.assigned_resources["folio_id"]
        version = booking.version

        booking = flow.change_resources(self.db, booking.id, schemas.ResourceChange(caddy_id=new_caddy.id))

        self.assertEqual(booking.assigned_resources["caddy_id"], new_caddy.id)
        self.assertEqual(booking.assigned_resources["lockers"], [self.locker.id])
        self.assertEqual(booking.assigned_resources["folio_id"], folio_id)
        self.assertGreater(booking.version, version)

        self.db.refresh(self.caddy)
        self.db.refresh(new_caddy)
        self.db.refresh(self.locker)
        self.assertEqual((self.caddy.status, self.caddy.booking_id), ("available", None))
        self.assertEqual((new_caddy.status, new_caddy.booking_id), ("occupied", booking.id))
        self.assertEqual(self.locker.booking_id, booking.id)

    def test_change_resources_is_all_or_nothing(self):
        booking = self._checked_in(caddy_id=self.caddy.id)

        with self.assertRaises(ResourceUnavailable):
            flow.change_resources(
                self.db, booking.id,
                schemas.ResourceChange(caddy_id=None, lockers=[self.broken_locker.id]),
            )

        self.db.expire_all()
        booking = flow.get_booking(self.db, booking.id)
        self.assertEqual(booking.assigned_resources["caddy_id"], self.caddy.id)
        self.assertEqual(booking.assigned_resources["lockers"], [])
        self.assertEqual(self.db.get(models.Resource, self.caddy.id).status, "occupied")

    def test_change_resources_requires_checked_in(self):
        booking = self._create()
        flow.confirm_booking(self.db, booking.id)
        with self.assertRaises(InvalidTransition):
            flow.change_resources(self.db, booking.id, schemas.ResourceChange(caddy_id=self.caddy.id))


class ResourceConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        url = "sqlite:///" + os.path.join(self.tmp.name, "resources.db")
        self.engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        db = self.Session()
        bookings = [
            models.Booking(order_no=f"ORD20260204{n:03d}", date=PLAY_DATE, tee_time="08:00", players=[], status_history=[])
            for n in (1, 2)
        ]
        locker = models.Resource(resource_type=models.ResourceType.locker, code="L01", status="available")
        db.add_all(bookings + [locker])
        db.commit()
        self.first_booking, self.second_booking = [b.id for b in bookings]
        self.locker_id = locker.id
        db.close()

    def tearDown(self):
        self.engine.dispose()
        self.tmp.cleanup()

    def test_reserve_rereads_the_committed_holder(self):
        first, second = self.Session(), self.Session()
        try:
            seen = ResourceCatalog(second).get(self.locker_id)
            self.assertEqual(seen.status, "available")

            ResourceCatalog(first).reserve(self.locker_id, self.first_booking)
            first.commit()

            with self.assertRaises(ResourceUnavailable) as ctx:
                ResourceCatalog(second).reserve(self.locker_id, self.second_booking)
            self.assertEqual(ctx.exception.context["holder_booking_id"], self.first_booking)
        finally:
            first.close()
            second.close()

    def test_stale_resource_write_gets_version_conflict(self):
        first, second = self.Session(), self.Session()
        try:
            stale = ResourceCatalog(second).get(self.locker_id)

            ResourceCatalog(first).reserve(self.locker_id, self.first_booking)
            first.commit()

            stale.status = "occupied"
            stale.booking_id = self.second_booking
            with self.assertRaises(VersionConflict):
                ledger.commit_or_conflict(second)
        finally:
            first.close()
            second.close()

        check = self.Session()
        self.assertEqual(check.get(models.Resource, self.locker_id).booking_id, self.first_booking)
        check.close()


class RateStoreTests(unittest.TestCase):
    def setUp(self):
        self.db = _memory_session()

    def tearDown(self):
        self.db.close()

    def test_seed_is_idempotent(self):
        self.assertEqual(seed_default_identity_types(self.db), 11)
        self.assertEqual(seed_default_identity_types(self.db), 0)

    def test_special_date_overrides_day_type(self):
        self.assertEqual(determine_day_type(self.db, PLAY_DATE).day_type, "weekday")
        self.assertEqual(determine_day_type(self.db, date(2026, 2, 7)).day_type, "weekend")

        self.db.add(models.SpecialDate(date=PLAY_DATE, date_type="holiday", date_name="Club founders day"))
        self.db.commit()
        info = determine_day_type(self.db, PLAY_DATE)
        self.assertEqual(info.day_type, "holiday")
        self.assertEqual(info.date_name, "Club founders day")
        self.assertFalse(info.is_closed)

    def test_time_slot_boundaries_come_from_club_settings(self):
        self.assertEqual(time_slot_for(self.db, "15:30"), "afternoon")
        set_club_setting(self.db, "time_slot_twilight_hour", "15")
        self.db.commit()
        self.assertEqual(time_slot_for(self.db, "15:30"), "twilight")

    def test_get_rate_cell_uses_newest_window(self):
        self.db.add_all([
            models.RateSheet(day_type="weekday", time_slot="morning", prices={"walkin": 700},
                             valid_from=date(2025, 1, 1), priority=0, status="active"),
            models.RateSheet(day_type="weekday", time_slot="morning", prices={"Walk-in": 750},
                             valid_from=date(2026, 1, 1), priority=0, status="active"),
        ])
        self.db.commit()

        cell = get_rate_cell(self.db, "weekday", "morning", PLAY_DATE)
        self.assertEqual(cell.price_for("walkin"), 750.0)
        old = get_rate_cell(self.db, "weekday", "morning", date(2025, 6, 1))
        self.assertEqual(old.price_for("walkin"), 700.0)

    def test_out_of_range_floor_rate_is_ignored(self):
        self.assertEqual(get_default_floor_price_rate(self.db), DEFAULT_FLOOR_PRICE_RATE)
        set_club_setting(self.db, "team_floor_price_rate", "0.7")
        self.db.commit()
        self.assertEqual(get_default_floor_price_rate(self.db), 0.7)

        for bad in ("1.5", "0", "-0.2"):
            set_club_setting(self.db, "team_floor_price_rate", bad)
            self.db.commit()
            self.assertEqual(get_default_floor_price_rate(self.db), DEFAULT_FLOOR_PRICE_RATE)
        self.assertEqual(get_team_pricing_policy(self.db).floor_price_rate, DEFAULT_FLOOR_PRICE_RATE)


if __name__ == "__main__":
    unittest.main()
