import os
import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from store_case import StoreTestCase

import MaterielMan as app_module
from models.materiel_models import Equipment


class ApiFlowTests(StoreTestCase):
    def setUp(self):
        super().setUp()
        app_module.app.dependency_overrides[app_module.get_materiel_db] = lambda: self.db
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        super().tearDown()

    def _create_equipment(self, name="Drill"):
        response = self.client.post(
            "/api/equipment",
            json={"name": name, "category": "Tools", "acquisitionDate": "2025-01-02T08:00:00", "value": 120},
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def _create_person(self, last="Martin", role=None):
        response = self.client.post("/api/persons", json={"lastName": last, "firstName": "Paul", "role": role})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def test_health(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_loan_flow_updates_status(self):
        equipment = self._create_equipment()
        person = self._create_person()
        self.assertEqual(equipment["status"], "available")

        loan = self.client.post(
            "/api/loans",
            json={
                "equipmentID": equipment["equipmentID"],
                "personID": person["personID"],
                "startDate": "2025-03-03T09:00:00",
                "endDate": "2025-03-10T09:00:00",
            },
        )
        self.assertEqual(loan.status_code, 200, loan.text)
        loan_id = loan.json()["loanID"]

        item = self.client.get(f"/api/equipment/{equipment['equipmentID']}").json()
        self.assertEqual(item["status"], "on-loan")
        self.assertFalse(item["isAvailable"])
        listed = self.client.get("/api/equipment").json()
        self.assertEqual(listed[0]["status"], "on-loan")

        returned = self.client.post(f"/api/loans/{loan_id}/return")
        self.assertEqual(returned.status_code, 200)
        self.assertIsNotNone(returned.json()["actualReturnDate"])
        self.assertEqual(self.client.post(f"/api/loans/{loan_id}/return").status_code, 409)
        item = self.client.get(f"/api/equipment/{equipment['equipmentID']}").json()
        self.assertEqual(item["status"], "available")

        history = self.client.get(f"/api/equipment/{equipment['equipmentID']}/history").json()
        self.assertEqual([row["loanID"] for row in history["loans"]], [loan_id])
        self.assertEqual(self.client.delete("/api/loans/returned").json(), {"deleted": 1})

    def test_rejections(self):
        equipment = self._create_equipment()
        person = self._create_person()
        self.assertEqual(self.client.get("/api/equipment/unknown").status_code, 404)

        unknown_person = self.client.post(
            "/api/loans",
            json={
                "equipmentID": equipment["equipmentID"],
                "personID": "nobody",
                "startDate": "2025-03-03T09:00:00",
                "endDate": "2025-03-10T09:00:00",
            },
        )
        self.assertEqual(unknown_person.status_code, 404)

        backwards = self.client.post(
            "/api/loans",
            json={
                "equipmentID": equipment["equipmentID"],
                "personID": person["personID"],
                "startDate": "2025-03-10T09:00:00",
                "endDate": "2025-03-03T09:00:00",
            },
        )
        self.assertEqual(backwards.status_code, 400)

        bad_role = self.client.post("/api/persons", json={"lastName": "X", "role": "plumber"})
        self.assertEqual(bad_role.status_code, 400)
        self.assertEqual(self.client.get("/api/ledger/entries", params={"month": 3}).status_code, 400)
        self.assertEqual(self.client.get("/api/ledger/entries", params={"year": 2025, "month": 13}).status_code, 422)

    def test_quota_refusal_returns_conflict(self):
        with mock.patch.dict(os.environ, {"MATERIEL_PREMIUM_UNLOCKED": "", "MATERIEL_FREE_LIMITS": "equipment=1"}):
            self._create_equipment("First")
            refused = self.client.post(
                "/api/equipment", json={"name": "Second", "acquisitionDate": "2025-01-02T08:00:00"}
            )
            self.assertEqual(refused.status_code, 409)
            quota = {row["category"]: row for row in self.client.get("/api/quota").json()}
            self.assertEqual(quota["equipment"]["remaining"], 0)
        self.assertEqual(self.db.query(Equipment).count(), 1)

    def test_borrow_relend_and_close(self):
        lender = self._create_person("Lender")
        client = self._create_person("Client", role="client")
        borrow = self.client.post(
            "/api/borrows",
            json={
                "itemName": "Ladder",
                "personID": lender["personID"],
                "startDate": "2025-03-01T08:00:00",
                "endDate": "2025-03-20T08:00:00",
            },
        )
        self.assertEqual(borrow.status_code, 200, borrow.text)
        borrow_id = borrow.json()["borrowID"]
        self.assertEqual(borrow.json()["linkState"], "no-shadow")

        past = self.client.post(
            f"/api/borrows/{borrow_id}/relend",
            json={"personID": client["personID"], "endDate": "2020-01-01T00:00:00"},
        )
        self.assertEqual(past.status_code, 400)

        end_date = (datetime.now() + timedelta(days=3)).replace(microsecond=0).isoformat()
        loan = self.client.post(
            f"/api/borrows/{borrow_id}/relend", json={"personID": client["personID"], "endDate": end_date}
        )
        self.assertEqual(loan.status_code, 200, loan.text)
        again = self.client.post(
            f"/api/borrows/{borrow_id}/relend", json={"personID": client["personID"], "endDate": end_date}
        )
        self.assertEqual(again.status_code, 409)

        state = self.client.get(f"/api/borrows/{borrow_id}").json()
        self.assertEqual(state["linkState"], "shadow-loaned")
        shadow_id = state["linkedEquipmentID"]
        shadow = self.client.get(f"/api/equipment/{shadow_id}").json()
        self.assertEqual(shadow["shadowOf"], {"kind": "borrow", "id": borrow_id})

        self.assertEqual(self.client.post(f"/api/borrows/{borrow_id}/return-loan").status_code, 200)
        self.assertEqual(self.client.post(f"/api/borrows/{borrow_id}/return-loan").status_code, 409)
        closed = self.client.post(f"/api/borrows/{borrow_id}/close")
        self.assertEqual(closed.status_code, 200)
        self.assertIsNone(closed.json()["linkedEquipmentID"])
        self.assertEqual(self.client.get(f"/api/equipment/{shadow_id}").status_code, 404)
        self.assertEqual(self.client.post(f"/api/borrows/{borrow_id}/close").status_code, 409)

    def test_rental_payment_reaches_ledger(self):
        equipment = self._create_equipment()
        renter = self._create_person()
        rental = self.client.post(
            "/api/rentals",
            json={
                "equipmentID": equipment["equipmentID"],
                "renterID": renter["personID"],
                "startDate": "2025-03-03T09:00:00",
                "endDate": "2025-03-05T09:00:00",
                "pricingType": "flat",
                "totalPrice": 75,
                "deposit": 100,
            },
        )
        self.assertEqual(rental.status_code, 200, rental.text)
        rental_id = rental.json()["rentalID"]
        self.assertEqual(rental.json()["totalPrice"], 75)

        too_much = self.client.post(f"/api/rentals/{rental_id}/keep-deposit", json={"amount": 150})
        self.assertEqual(too_much.status_code, 400)
        for received in (True, False, True):
            self.client.post(f"/api/rentals/{rental_id}/payment", json={"received": received})
        self.client.post(f"/api/rentals/{rental_id}/keep-deposit", json={"amount": 40})

        year = datetime.now().year
        entries = self.client.get("/api/ledger/entries", params={"year": year}).json()
        self.assertEqual(sorted(entry["kind"] for entry in entries), ["deposit-kept", "rental-revenue"])
        totals = self.client.get("/api/ledger/totals").json()
        self.assertEqual(totals["revenue"], 115)
        self.assertEqual(self.client.get("/api/ledger/years").json(), [year])

        deleted = self.client.post("/api/ledger/entries/delete", json={"entryIDs": [entries[0]["entryID"]]})
        self.assertEqual(deleted.json(), {"deleted": 1})

    def test_export_then_import(self):
        self._create_equipment()
        self._create_person()
        exported = self.client.post("/api/export")
        self.assertEqual(exported.status_code, 200)
        document = exported.json()
        self.assertEqual(len(document["equipment"]), 1)
        self.assertIn("appVersion", document)

        repeat = self.client.post("/api/import", json=document)
        self.assertEqual(repeat.status_code, 200, repeat.text)
        self.assertEqual(repeat.json()["imported"]["equipment"], 0)

        self.assertEqual(self.client.post("/api/import", json={"nothing": True}).status_code, 400)

    def test_categories_and_roles(self):
        self._create_equipment("Saw")
        renamed = self.client.put("/api/equipment/categories", json={"oldName": "tools", "newName": "Cutting"})
        self.assertEqual(renamed.json(), {"updated": 1})
        self.assertEqual(self.client.get("/api/equipment/categories").json(), ["Cutting"])
        self.assertIn("rental_agency", self.client.get("/api/persons/roles").json())


if __name__ == "__main__":
    unittest.main()
