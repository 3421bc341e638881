import sys
import unittest
from datetime import timedelta
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from store_case import D0, StoreTestCase

from models.materiel_models import Equipment, Loan, Rental, Repair
from services import equipment_service, linkage_service, loan_service, rental_service, repair_service
from services.status_service import (
    SHADOW_FREE,
    SHADOW_IN_REPAIR,
    SHADOW_LOANED,
    SHADOW_NONE,
    SHADOW_SUB_RENTED,
    STATUS_ON_LOAN,
    owner_active_loan,
    owner_active_rental,
    owner_state,
    resolve_status,
)


class BorrowLinkageTests(StoreTestCase):
    def setUp(self):
        super().setUp()
        self.lender = self.make_person("Lender", "Lea")
        self.client = self.make_person("Client", "Carl", role="client")
        self.mechanic = self.make_person("Mechanic", "Max", role="mechanic")
        self.borrow = self.make_borrow(self.lender, "Ladder")

    def test_relend_return_and_close_scenario(self):
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_NONE)

        loan = linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=4), now=D0)

        shadow_id = self.borrow.LinkedEquipmentID
        self.assertIsNotNone(shadow_id)
        shadow = self.db.get(Equipment, shadow_id)
        self.assertEqual(shadow.Name, "Ladder")
        self.assertEqual(shadow.Category, linkage_service.SHADOW_CATEGORY_BORROWED)
        self.assertEqual(shadow.AcquisitionDate, self.borrow.StartDate)
        self.assertEqual(self.borrow.ActiveLoanID, loan.LoanID)
        self.assertEqual(loan.EquipmentID, shadow_id)
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_LOANED)
        self.assertEqual(resolve_status(self.db, shadow_id), STATUS_ON_LOAN)

        returned = linkage_service.return_owner_loan(self.db, self.borrow, now=D0 + timedelta(days=3))
        self.assertEqual(returned.LoanID, loan.LoanID)
        self.assertIsNotNone(loan.ActualReturnDate)
        self.assertIsNone(self.borrow.ActiveLoanID)
        self.assertIsNotNone(self.db.get(Equipment, shadow_id))
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_FREE)

        self.assertTrue(linkage_service.close_owner(self.db, self.borrow, now=D0 + timedelta(days=5)))
        self.assertIsNone(self.db.get(Equipment, shadow_id))
        self.assertIsNone(self.borrow.LinkedEquipmentID)
        self.assertIsNotNone(self.borrow.ActualReturnDate)
        self.assertIsNotNone(self.db.get(Loan, loan.LoanID))

    def test_relend_reuses_existing_shadow(self):
        shadow = linkage_service.create_shadow_equipment(self.db, self.borrow, category="Ladders")
        self.assertEqual(shadow.Category, "Ladders")
        self.assertIsNone(linkage_service.create_shadow_equipment(self.db, self.borrow))

        loan = linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        self.assertEqual(loan.EquipmentID, shadow.EquipmentID)
        self.assertEqual(self.db.query(Equipment).count(), 1)

    def test_loan_created_directly_on_shadow_is_found(self):
        shadow = linkage_service.create_shadow_equipment(self.db, self.borrow)
        loan = loan_service.add_loan(self.db, shadow.EquipmentID, self.client.PersonID, D0, D0 + timedelta(days=2))

        self.assertIsNone(self.borrow.ActiveLoanID)
        self.assertEqual(owner_active_loan(self.db, self.borrow).LoanID, loan.LoanID)
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_LOANED)

        self.assertIsNone(
            linkage_service.sub_rent(self.db, self.borrow, self.client.PersonID, D0, D0 + timedelta(days=2))
        )
        returned = linkage_service.return_owner_loan(self.db, self.borrow)
        self.assertEqual(returned.LoanID, loan.LoanID)

    def test_second_relend_is_refused_while_lent(self):
        linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        self.assertIsNone(
            linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        )
        self.assertEqual(self.db.query(Loan).count(), 1)

    def test_relend_refused_after_close(self):
        linkage_service.close_owner(self.db, self.borrow, now=D0)
        self.assertIsNone(
            linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        )
        self.assertFalse(linkage_service.close_owner(self.db, self.borrow))

    def test_updates_never_close_the_owner(self):
        loan = linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=4), now=D0)
        shadow_id = self.borrow.LinkedEquipmentID

        loan_service.update_borrow(self.db, self.borrow, ActualReturnDate=D0, Notes="moved")
        loan_service.update_loan(self.db, loan, ActualReturnDate=D0)

        self.assertIsNone(self.borrow.ActualReturnDate)
        self.assertEqual(self.borrow.Notes, "moved")
        self.assertIsNone(loan.ActualReturnDate)
        self.assertEqual(self.borrow.ActiveLoanID, loan.LoanID)
        self.assertIsNotNone(self.db.get(Equipment, shadow_id))

    def test_sub_rent_and_return(self):
        rental = linkage_service.sub_rent(
            self.db,
            self.borrow,
            self.client.PersonID,
            D0,
            D0 + timedelta(days=6),
            unit_price=15,
            pricing_type="day",
        )
        self.assertEqual(rental.TotalPrice, 105)
        self.assertEqual(self.borrow.ActiveRentalID, rental.RentalID)
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_SUB_RENTED)

        linkage_service.return_owner_rental(self.db, self.borrow, now=D0 + timedelta(days=1))
        self.assertEqual(rental.TotalPrice, 30)
        self.assertIsNone(self.borrow.ActiveRentalID)
        self.assertIsNone(owner_active_rental(self.db, self.borrow))

    def test_free_repair_and_return(self):
        repair = linkage_service.send_owner_to_repair(
            self.db,
            self.borrow,
            self.mechanic.PersonID,
            "Broken rung",
            estimated_cost=40,
            free=True,
            now=D0,
        )
        self.assertIsNone(repair.EstimatedCost)
        self.assertEqual(repair.FinalCost, 0)
        self.assertTrue(repair.PaymentReceived)
        self.assertIn(linkage_service.FREE_REPAIR_NOTE, repair.Notes)
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_IN_REPAIR)
        self.assertIsNone(
            linkage_service.send_owner_to_repair(self.db, self.borrow, self.mechanic.PersonID, "Again")
        )

        linkage_service.return_owner_repair(self.db, self.borrow, now=D0 + timedelta(days=1))
        self.assertIsNotNone(repair.ReturnDate)
        self.assertIsNone(self.borrow.ActiveRepairID)
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_FREE)

    def test_closing_owner_leaves_open_derived_records(self):
        loan = linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        linkage_service.close_owner(self.db, self.borrow, now=D0 + timedelta(days=1))
        self.assertIsNone(self.db.get(Loan, loan.LoanID).ActualReturnDate)

    def test_missing_shadow_is_recreated(self):
        shadow = linkage_service.create_shadow_equipment(self.db, self.borrow)
        self.db.delete(shadow)
        self.db.commit()
        self.assertEqual(owner_state(self.db, self.borrow), SHADOW_NONE)

        loan = linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        self.assertIsNotNone(loan)
        self.assertNotEqual(self.borrow.LinkedEquipmentID, shadow.EquipmentID)
        self.assertIsNotNone(self.db.get(Equipment, self.borrow.LinkedEquipmentID))

    def test_returning_loan_from_loan_list_clears_back_reference(self):
        loan = linkage_service.relend(self.db, self.borrow, self.client.PersonID, D0 + timedelta(days=2), now=D0)
        loan_service.return_loan(self.db, loan)
        self.db.refresh(self.borrow)
        self.assertIsNone(self.borrow.ActiveLoanID)

    def test_delete_owner_removes_shadow(self):
        shadow = linkage_service.create_shadow_equipment(self.db, self.borrow)
        linkage_service.delete_owner(self.db, self.borrow)
        self.assertIsNone(self.db.get(Equipment, shadow.EquipmentID))


class MyRentalLinkageTests(StoreTestCase):
    def test_close_recomputes_unit_price_and_drops_shadow(self):
        agency = self.make_person("Agency", "Rent", role="rental_agency")
        my_rental = self.make_my_rental(
            agency,
            PricingType="day",
            UnitPrice=20,
            TotalPrice=140,
            StartDate=D0,
            EndDate=D0 + timedelta(days=6),
        )
        shadow = linkage_service.create_shadow_equipment(self.db, my_rental)
        self.assertEqual(shadow.Category, linkage_service.SHADOW_CATEGORY_RENTED)

        linkage_service.close_owner(self.db, my_rental, now=D0 + timedelta(days=2))

        self.assertEqual(my_rental.TotalPrice, 60)
        self.assertIsNone(self.db.get(Equipment, shadow.EquipmentID))
        self.assertIsNone(my_rental.LinkedEquipmentID)

    def test_relend_of_incoming_rental(self):
        agency = self.make_person("Agency", "Rent", role="rental_agency")
        client = self.make_person("Client", "Cleo")
        my_rental = self.make_my_rental(agency)
        loan = linkage_service.relend(self.db, my_rental, client.PersonID, D0 + timedelta(days=3), now=D0)
        self.assertEqual(my_rental.ActiveLoanID, loan.LoanID)
        self.assertEqual(equipment_service.shadow_owner(self.db, loan.EquipmentID), {"kind": "myRental", "id": my_rental.MyRentalID})

        rental_service.update_my_rental(self.db, my_rental, ActualReturnDate=D0, UnitPrice=5)
        self.assertIsNone(my_rental.ActualReturnDate)
        self.assertEqual(my_rental.UnitPrice, 5)
        self.assertIsNotNone(self.db.get(Equipment, loan.EquipmentID))


class DerivedRepairTests(StoreTestCase):
    def test_send_loan_to_repair_closes_loan(self):
        equipment = self.make_equipment()
        client = self.make_person()
        mechanic = self.make_person("Mechanic", "Max", role="mechanic")
        loan = loan_service.add_loan(self.db, equipment.EquipmentID, client.PersonID, D0, D0 + timedelta(days=3))

        repair = loan_service.send_loan_to_repair(self.db, loan, mechanic.PersonID, "Damaged", now=D0 + timedelta(days=1))

        self.assertEqual(loan.ActualReturnDate, D0 + timedelta(days=1))
        self.assertEqual(repair.OriginLoanID, loan.LoanID)
        self.assertEqual(repair.EquipmentID, equipment.EquipmentID)

    def test_send_rental_to_repair_closes_rental(self):
        equipment = self.make_equipment()
        client = self.make_person()
        mechanic = self.make_person("Mechanic", "Max", role="mechanic")
        rental = rental_service.add_rental(
            self.db, equipment.EquipmentID, client.PersonID, D0, D0 + timedelta(days=9), pricing_type="day", unit_price=10
        )
        repair = rental_service.send_rental_to_repair(
            self.db, rental, mechanic.PersonID, "Worn", now=D0 + timedelta(days=4)
        )
        self.assertEqual(rental.TotalPrice, 50)
        self.assertEqual(repair.OriginRentalID, rental.RentalID)
        self.assertIsNone(repair.ReturnDate)


class EquipmentCascadeTests(StoreTestCase):
    def test_delete_equipment_removes_loans_and_repairs_but_keeps_rentals(self):
        equipment = self.make_equipment()
        person = self.make_person()
        loan = loan_service.add_loan(self.db, equipment.EquipmentID, person.PersonID, D0, D0 + timedelta(days=1))
        rental = rental_service.add_rental(self.db, equipment.EquipmentID, person.PersonID, D0, D0 + timedelta(days=1))
        repair = repair_service.add_repair(self.db, equipment.EquipmentID, person.PersonID, "Check")
        ids = (loan.LoanID, rental.RentalID, repair.RepairID)

        equipment_service.delete_equipment(self.db, equipment)
        self.db.expunge_all()

        self.assertIsNone(self.db.get(Loan, ids[0]))
        self.assertIsNotNone(self.db.get(Rental, ids[1]))
        self.assertIsNone(self.db.get(Repair, ids[2]))

    def test_category_rename_and_delete(self):
        self.make_equipment("A", Category="Power tools")
        self.make_equipment("B", Category=" power TOOLS ")
        self.make_equipment("C", Category="Ladders")
        self.assertEqual(equipment_service.list_categories(self.db), ["Ladders", "Power tools"])

        self.assertEqual(equipment_service.rename_category(self.db, "POWER TOOLS", "  Electric  "), 2)
        self.assertEqual(equipment_service.list_categories(self.db), ["Electric", "Ladders"])
        self.assertEqual(equipment_service.rename_category(self.db, "Ladders", "   "), 0)

        self.assertEqual(equipment_service.delete_category(self.db, "ladders"), 1)
        self.assertEqual(equipment_service.list_categories(self.db), ["Electric"])


if __name__ == "__main__":
    unittest.main()
