import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from store_case import D0, StoreTestCase

from models.materiel_models import Loan, Rental, Repair
from services import loan_service, pricing, rental_service, repair_service
from services.status_service import (
    STATUS_AVAILABLE,
    STATUS_IN_REPAIR,
    STATUS_ON_LOAN,
    STATUS_RENTED_OUT,
    build_status_index,
    is_available,
    resolve_status,
)


class StatusResolverTests(StoreTestCase):
    def _open_rental(self, equipment, person):
        rental = Rental(
            RentalID=f"rental-{equipment.EquipmentID}",
            EquipmentID=equipment.EquipmentID,
            RenterID=person.PersonID,
            StartDate=D0,
            EndDate=D0 + timedelta(days=3),
            PricingType="flat",
            TotalPrice=50,
        )
        self.db.add(rental)
        self.db.commit()
        return rental

    def _open_repair(self, equipment, person):
        repair = Repair(
            RepairID=f"repair-{equipment.EquipmentID}",
            EquipmentID=equipment.EquipmentID,
            RepairerID=person.PersonID,
            StartDate=D0,
        )
        self.db.add(repair)
        self.db.commit()
        return repair

    def test_loan_lifecycle_drives_status(self):
        equipment = self.make_equipment("E1")
        person = self.make_person()
        loan = loan_service.add_loan(self.db, equipment.EquipmentID, person.PersonID, D0, D0 + timedelta(days=7))
        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_ON_LOAN)
        self.assertFalse(is_available(self.db, equipment.EquipmentID))

        loan_service.return_loan(self.db, loan)

        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_AVAILABLE)
        self.assertIsNotNone(self.db.get(Loan, loan.LoanID).ActualReturnDate)

    def test_loan_wins_over_rental_and_repair(self):
        equipment = self.make_equipment()
        person = self.make_person()
        self._open_repair(equipment, person)
        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_IN_REPAIR)
        self._open_rental(equipment, person)
        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_RENTED_OUT)
        loan_service.add_loan(self.db, equipment.EquipmentID, person.PersonID, D0, D0 + timedelta(days=1))

        for _ in range(3):
            self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_ON_LOAN)
        self.assertEqual(build_status_index(self.db)[equipment.EquipmentID], STATUS_ON_LOAN)

    def test_index_matches_resolver(self):
        person = self.make_person()
        idle = self.make_equipment("Idle")
        rented = self.make_equipment("Rented")
        repaired = self.make_equipment("Repaired")
        self._open_rental(rented, person)
        self._open_repair(repaired, person)

        index = build_status_index(self.db)
        for equipment in (idle, rented, repaired):
            self.assertEqual(
                index.get(equipment.EquipmentID, STATUS_AVAILABLE),
                resolve_status(self.db, equipment.EquipmentID),
            )

    def test_repair_return_frees_equipment(self):
        equipment = self.make_equipment()
        mechanic = self.make_person(role="mechanic")
        repair = repair_service.add_repair(self.db, equipment.EquipmentID, mechanic.PersonID, "Motor", start_date=D0)
        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_IN_REPAIR)
        repair_service.return_repair(self.db, repair, final_cost=80, now=D0 + timedelta(days=2))
        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_AVAILABLE)
        self.assertFalse(repair.PaymentReceived)
        self.assertEqual(repair_service.days_in_repair(repair), 2)


class PricingTests(unittest.TestCase):
    def test_units_per_pricing_type(self):
        start = datetime(2025, 1, 1, 10, 0)
        end = datetime(2025, 1, 10, 12, 0)
        self.assertEqual(pricing.span_days(start, end), 10)
        self.assertEqual(pricing.span_days(start, datetime(2025, 1, 10, 8, 0)), 9)
        self.assertEqual(pricing.units_for_days(pricing.PRICING_DAY, 10), 10)
        self.assertEqual(pricing.units_for_days(pricing.PRICING_WEEK, 10), 2)
        self.assertEqual(pricing.units_for_days(pricing.PRICING_MONTH, 10), 1)
        self.assertEqual(pricing.units_for_days(pricing.PRICING_MONTH, 31), 2)
        self.assertEqual(pricing.units_for_days(pricing.PRICING_FLAT, 10), 1)

    def test_same_day_span_counts_one_day(self):
        moment = datetime(2025, 5, 5, 8, 0)
        self.assertEqual(pricing.span_days(moment, moment), 1)
        self.assertEqual(pricing.span_days(moment, moment - timedelta(days=3)), 1)
        self.assertEqual(pricing.span_days(datetime(2025, 3, 3, 18, 0), datetime(2025, 3, 4, 9, 0)), 1)

    def test_quote_counts_calendar_months(self):
        start = datetime(2025, 1, 31)
        self.assertEqual(pricing.units_for_quote(pricing.PRICING_MONTH, start, datetime(2025, 3, 1)), 2)
        self.assertEqual(pricing.units_for_quote(pricing.PRICING_MONTH, start, datetime(2025, 1, 31)), 1)
        self.assertEqual(pricing.quote_total(pricing.PRICING_MONTH, 300, datetime(2025, 1, 15), datetime(2025, 3, 20)), 900)

    def test_unknown_pricing_type_raises(self):
        with self.assertRaises(ValueError):
            pricing.normalize_pricing_type("hourly")
        self.assertEqual(pricing.normalize_pricing_type(None), pricing.PRICING_FLAT)

    def test_effective_and_realized_totals(self):
        record = SimpleNamespace(
            PricingType=pricing.PRICING_DAY,
            UnitPrice=10.0,
            TotalPrice=0.0,
            StartDate=datetime(2025, 6, 1),
            EndDate=datetime(2025, 6, 10),
            ActualReturnDate=None,
        )
        self.assertEqual(pricing.effective_total(record), 100)
        self.assertEqual(pricing.realized_total(record, datetime(2025, 6, 4)), 40)
        self.assertEqual(pricing.realized_total(record, datetime(2025, 5, 1)), 10)

        pricing.close_priced_record(record, datetime(2025, 6, 5))
        self.assertEqual(record.TotalPrice, 50)
        self.assertEqual(pricing.realized_total(record, datetime(2025, 7, 1)), 50)

        overnight = SimpleNamespace(
            PricingType=pricing.PRICING_DAY,
            UnitPrice=10.0,
            TotalPrice=0.0,
            StartDate=datetime(2025, 3, 3, 18, 0),
            EndDate=datetime(2025, 3, 6, 18, 0),
            ActualReturnDate=None,
        )
        self.assertEqual(pricing.realized_total(overnight, datetime(2025, 3, 4, 9, 0)), 10)
        pricing.close_priced_record(overnight, datetime(2025, 3, 4, 9, 0))
        self.assertEqual(overnight.TotalPrice, 10)

    def test_flat_price_is_kept_on_close(self):
        record = SimpleNamespace(
            PricingType=pricing.PRICING_FLAT,
            UnitPrice=0.0,
            TotalPrice=250.0,
            StartDate=datetime(2025, 6, 1),
            EndDate=datetime(2025, 6, 10),
            ActualReturnDate=None,
        )
        pricing.close_priced_record(record, datetime(2025, 6, 20))
        self.assertEqual(record.TotalPrice, 250)

    def test_lateness(self):
        end = datetime(2025, 6, 10, 12, 0)
        self.assertFalse(pricing.is_overdue(end, None, datetime(2025, 6, 10, 11, 0)))
        self.assertTrue(pricing.is_overdue(end, None, datetime(2025, 6, 13, 13, 0)))
        self.assertEqual(pricing.days_late(end, None, datetime(2025, 6, 13, 13, 0)), 3)
        self.assertFalse(pricing.is_overdue(end, datetime(2025, 6, 12), datetime(2025, 6, 13)))
        self.assertFalse(pricing.is_overdue(None, None, datetime(2025, 6, 13)))


class RentalPricingFlowTests(StoreTestCase):
    def test_rental_total_defaults_to_contract_price(self):
        equipment = self.make_equipment()
        renter = self.make_person()
        weekly = rental_service.add_rental(
            self.db,
            equipment.EquipmentID,
            renter.PersonID,
            D0,
            D0 + timedelta(days=9),
            pricing_type="week",
            unit_price=70,
        )
        self.assertEqual(weekly.TotalPrice, 140)

        rental_service.return_rental(self.db, weekly, now=D0 + timedelta(days=3))
        self.assertEqual(weekly.TotalPrice, 70)
        self.assertEqual(resolve_status(self.db, equipment.EquipmentID), STATUS_AVAILABLE)

    def test_sub_rental_uses_calendar_month_quote(self):
        equipment = self.make_equipment()
        renter = self.make_person()
        parent = rental_service.add_rental(
            self.db, equipment.EquipmentID, renter.PersonID, D0, D0 + timedelta(days=90), total_price=900
        )
        sub_rental = rental_service.sub_rent_rental(
            self.db,
            parent,
            renter.PersonID,
            datetime(2025, 3, 10),
            datetime(2025, 4, 10),
            unit_price=200,
            pricing_type="month",
        )
        self.assertEqual(sub_rental.TotalPrice, 400)
        self.assertEqual(parent.SubRentalID, sub_rental.RentalID)
        self.assertIsNone(
            rental_service.sub_rent_rental(self.db, parent, renter.PersonID, D0, D0 + timedelta(days=1))
        )

        closed = rental_service.return_sub_rental(self.db, parent, now=datetime(2025, 3, 20))
        self.assertEqual(closed.RentalID, sub_rental.RentalID)
        self.assertEqual(sub_rental.TotalPrice, 200)
        self.assertIsNone(parent.SubRentalID)


if __name__ == "__main__":
    unittest.main()
