import os
import unittest

os.environ.setdefault("SQLITE_FALLBACK_URL", "sqlite://")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from clubhouse.database import Base, get_db
from clubhouse.events import event_sink
from clubhouse.main import app

PLAY_DATE = "2026-02-04"


class ApiTests(unittest.TestCase):
    def setUp(self):
        engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
        Base.metadata.create_all(bind=engine)
        TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)

        def override_get_db():
            db = TestingSession()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.client = TestClient(app)

        resp = self.client.post("/identity-types/seed")
        self.assertEqual(resp.status_code, 200)
        resp = self.client.post("/rates/sheets", json={
            "rule_name": "Weekday morning",
            "day_type": "weekday",
            "time_slot": "morning",
            "prices": {"walkin": 800, "Member1": 400},
            "caddy_fee": 300,
        })
        self.assertEqual(resp.status_code, 200, resp.text)
        self.sheet = resp.json()

    def tearDown(self):
        app.dependency_overrides.clear()
        event_sink.clear()

    def _booking(self, **overrides):
        payload = {
            "date": PLAY_DATE,
            "tee_time": "8:05",
            "players": [{"name": "Ana", "identity_code": "walkin"}, {"name": "Ben", "identity_code": "member_1"}],
        }
        payload.update(overrides)
        resp = self.client.post("/bookings/", json=payload)
        self.assertEqual(resp.status_code, 200, resp.text)
        return resp.json()

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["ok"])

    def test_identity_types_are_listed(self):
        codes = [i["code"] for i in self.client.get("/identity-types/").json()]
        self.assertIn("walkin", codes)
        self.assertIn("member_4", codes)
        self.assertEqual(self.client.post("/identity-types/seed").json()["created"], 0)

    def test_sheet_prices_are_normalized(self):
        self.assertEqual(self.sheet["prices"], {"walkin": 800.0, "member_1": 400.0})
        resp = self.client.post("/rates/sheets", json={"day_type": "someday", "time_slot": "morning", "prices": {}})
        self.assertEqual(resp.status_code, 422)

    def test_matrix_and_quote(self):
        matrix = self.client.get("/rates/matrix", params={"on_date": PLAY_DATE}).json()["matrix"]
        self.assertEqual(matrix["weekday"]["morning"], self.sheet["id"])
        self.assertIsNone(matrix["weekend"]["morning"])

        resp = self.client.post("/rates/quote", json={
            "date": PLAY_DATE,
            "tee_time": "07:30",
            "players": [{"name": "Ana", "identity_code": "walkin"}, {"name": "Kim", "identity_code": "coach"}],
            "need_caddy": True,
        })
        self.assertEqual(resp.status_code, 200, resp.text)
        quote = resp.json()
        self.assertEqual(quote["time_slot"], "morning")
        self.assertEqual(quote["total"], 1100.0)
        self.assertTrue(quote["has_warnings"])

    def test_team_policy_roundtrip_and_validation(self):
        bad = self.client.put("/rates/team-policy", json={
            "tiers": [
                {"min_players": 8, "max_players": 10, "discount_rate": 0.9},
                {"min_players": 12, "max_players": None, "discount_rate": 0.8},
            ],
        })
        self.assertEqual(bad.status_code, 422)
        self.assertEqual(bad.json()["detail"]["code"], "invalid_team_policy")

        ok = self.client.put("/rates/team-policy", json={
            "tiers": [
                {"min_players": 8, "max_players": 15, "discount_rate": 0.9, "label": "Group"},
                {"min_players": 16, "max_players": None, "discount_rate": 0.8, "label": "Large group"},
            ],
            "floor_price_rate": 0.6,
        })
        self.assertEqual(ok.status_code, 200, ok.text)
        policy = self.client.get("/rates/team-policy").json()
        self.assertTrue(policy["enabled"])
        self.assertEqual(len(policy["tiers"]), 2)

    def test_closed_day_blocks_booking(self):
        self.client.post("/rates/special-dates", json={"date": PLAY_DATE, "date_type": "closed", "is_closed": True})
        resp = self.client.post("/bookings/", json={
            "date": PLAY_DATE,
            "tee_time": "08:00",
            "players": [{"name": "Ana", "identity_code": "walkin"}],
        })
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["detail"]["code"], "day_closed")

    def test_booking_validation(self):
        resp = self.client.post("/bookings/", json={
            "date": PLAY_DATE,
            "tee_time": "08:00",
            "holes": 10,
            "players": [{"name": "Ana", "identity_code": "walkin"}],
        })
        self.assertEqual(resp.status_code, 422)

        resp = self.client.post("/bookings/", json={"date": PLAY_DATE, "tee_time": "08:00", "players": []})
        self.assertEqual(resp.status_code, 422)

    def test_missing_booking_is_404(self):
        resp = self.client.get("/bookings/999")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"]["code"], "booking_not_found")

    def test_full_lifecycle(self):
        caddy = self.client.post("/resources/", json={"resource_type": "caddy", "code": "C07"}).json()
        booking = self._booking()
        self.assertEqual(booking["status"], "pending")
        self.assertEqual(booking["tee_time"], "08:05")

        resp = self.client.post(f"/bookings/{booking['id']}/check-in", json={})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["code"], "invalid_transition")

        booking = self.client.post(f"/bookings/{booking['id']}/confirm", json={"expected_version": booking["version"]}).json()
        self.assertEqual(booking["status"], "confirmed")

        resp = self.client.post(f"/bookings/{booking['id']}/check-in", json={"caddy_id": caddy["id"]})
        self.assertEqual(resp.status_code, 200, resp.text)
        booking = resp.json()
        self.assertEqual(booking["status"], "checked_in")
        self.assertEqual(booking["total_fee"], 1500.0)

        available = self.client.get("/resources/available", params={"resource_type": "caddy"}).json()
        self.assertEqual(available, [])

        folio_id = booking["assigned_resources"]["folio_id"]
        resp = self.client.post(f"/bookings/{booking['id']}/complete")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["code"], "folio_not_settled")

        folio = self.client.post(f"/folios/{folio_id}/charges", json={"charge_type": "pos", "amount": 45.5}).json()
        self.assertEqual(folio["total_charges"], 1545.5)

        resp = self.client.post(f"/folios/{folio_id}/settle", json={})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["context"]["balance"], 1545.5)

        folio = self.client.post(f"/folios/{folio_id}/payments", json={"amount": 1545.5, "pay_method": "cash"}).json()
        self.assertEqual(folio["balance"], 0.0)
        folio = self.client.post(f"/folios/{folio_id}/settle", json={"operator": "cashier"}).json()
        self.assertEqual(folio["status"], "settled")

        resp = self.client.post(f"/bookings/{booking['id']}/complete")
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertEqual(resp.json()["status"], "completed")

        available = self.client.get("/resources/available", params={"resource_type": "caddy"}).json()
        self.assertEqual([r["code"] for r in available], ["C07"])

    def test_void_and_refund_over_http(self):
        folio = self.client.post("/folios/", json={"guest_name": "Pro shop"}).json()
        folio = self.client.post(f"/folios/{folio['id']}/charges/batch", json={"items": [
            {"charge_type": "pos", "amount": 20},
            {"charge_type": "pos", "amount": 30},
        ]}).json()
        charge_id = folio["charges"][0]["id"]

        folio = self.client.post(f"/folios/{folio['id']}/charges/{charge_id}/void", json={"reason": "Returned"}).json()
        self.assertEqual(folio["total_charges"], 30.0)
        resp = self.client.post(f"/folios/{folio['id']}/charges/{charge_id}/void", json={})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["code"], "already_voided")

        folio = self.client.post(f"/folios/{folio['id']}/payments", json={"amount": 50}).json()
        self.assertEqual(folio["credit"], 20.0)
        folio = self.client.post(f"/folios/{folio['id']}/refunds", json={"amount": 20}).json()
        self.assertEqual(folio["credit"], 0.0)
        self.assertEqual(folio["payments"][-1]["kind"], "refund")

        resp = self.client.post(f"/folios/{folio['id']}/payments", json={"amount": -1})
        self.assertEqual(resp.status_code, 422)

    def test_folio_void_and_stats_over_http(self):
        folio = self.client.post("/folios/", json={"guest_name": "Ana"}).json()
        self.client.post(f"/folios/{folio['id']}/charges", json={"charge_type": "pos", "amount": 40})

        stats = self.client.get("/folios/stats").json()
        self.assertEqual(stats["open_count"], 1)
        self.assertEqual(stats["open_balance"], 40.0)

        resp = self.client.post(f"/folios/{folio['id']}/void", json={"reason": "Opened by mistake"})
        self.assertEqual(resp.status_code, 200, resp.text)
        voided = resp.json()
        self.assertEqual(voided["status"], "void")
        self.assertEqual(voided["void_reason"], "Opened by mistake")
        self.assertEqual(voided["total_charges"], 0.0)

        resp = self.client.post(f"/folios/{folio['id']}/charges", json={"charge_type": "pos", "amount": 5})
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["detail"]["code"], "folio_closed")
        self.assertEqual(self.client.get("/folios/stats").json()["open_count"], 0)

    def test_change_resources_over_http(self):
        first = self.client.post("/resources/", json={"resource_type": "caddy", "code": "C07"}).json()
        second = self.client.post("/resources/", json={"resource_type": "caddy", "code": "C08"}).json()
        booking = self._booking()
        self.client.post(f"/bookings/{booking['id']}/confirm")
        booking = self.client.post(f"/bookings/{booking['id']}/check-in", json={"caddy_id": first["id"]}).json()

        resp = self.client.put(f"/bookings/{booking['id']}/resources", json={
            "caddy_id": second["id"],
            "expected_version": booking["version"],
        })
        self.assertEqual(resp.status_code, 200, resp.text)
        changed = resp.json()
        self.assertEqual(changed["assigned_resources"]["caddy_id"], second["id"])
        self.assertGreater(changed["version"], booking["version"])

        available = self.client.get("/resources/available", params={"resource_type": "caddy"}).json()
        self.assertEqual([r["code"] for r in available], ["C07"])

        stale = self.client.put(f"/bookings/{booking['id']}/resources", json={
            "caddy_id": first["id"],
            "expected_version": booking["version"],
        })
        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stale.json()["detail"]["code"], "version_conflict")

    def test_statement_export(self):
        folio = self.client.post("/folios/", json={"guest_name": "Ana"}).json()
        self.client.post(f"/folios/{folio['id']}/charges", json={"charge_type": "pos", "amount": 12})
        resp = self.client.get(f"/folios/{folio['id']}/statement.xlsx")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("spreadsheetml", resp.headers["content-type"])
        self.assertIn(folio["folio_no"], resp.headers["content-disposition"])


if __name__ == "__main__":
    unittest.main()
