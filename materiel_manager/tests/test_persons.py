import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from store_case import D0, StoreTestCase

from models.materiel_models import Loan, Person, Rental, Repair, Worksite
from services import loan_service, person_service, rental_service, repair_service, site_service


class DuplicateMergeTests(StoreTestCase):
    def test_groups_ignore_case_and_padding(self):
        self.make_person("Martin", "Paul")
        self.make_person(" martin ", "PAUL ")
        self.make_person("Durand", "Anne")

        groups = person_service.find_duplicate_groups(self.db)

        self.assertEqual(len(groups), 1)
        self.assertEqual(len(groups[0]), 2)

    def test_merge_keeps_most_complete_and_moves_references(self):
        sparse = self.make_person("Martin", "Paul", Phone="0600000000", CreatedDate=datetime(2024, 1, 1))
        rich = self.make_person(
            "Martin",
            "Paul",
            Email="paul@example.org",
            Phone="0611111111",
            CreatedDate=datetime(2024, 2, 1),
        )
        third = self.make_person("Martin", "Paul", Organization="Acme", CreatedDate=datetime(2024, 3, 1))
        equipment = self.make_equipment()
        loan = loan_service.add_loan(self.db, equipment.EquipmentID, sparse.PersonID, D0, D0 + timedelta(days=2))
        rental = rental_service.add_rental(self.db, equipment.EquipmentID, third.PersonID, D0, D0 + timedelta(days=2))
        repair = repair_service.add_repair(self.db, equipment.EquipmentID, sparse.PersonID, "Check")
        borrow = self.make_borrow(third)
        worksite = site_service.add_worksite(self.db, Name="Depot", ContactPersonID=sparse.PersonID)

        survivor = person_service.merge_persons(self.db, person_service.find_duplicate_groups(self.db)[0])

        self.assertEqual(survivor.PersonID, rich.PersonID)
        self.assertEqual(survivor.Email, "paul@example.org")
        self.assertEqual(survivor.Phone, "0611111111")
        self.assertEqual(survivor.Organization, "Acme")
        self.db.expunge_all()
        self.assertEqual(self.db.query(Person).count(), 1)
        self.assertEqual(self.db.get(Loan, loan.LoanID).PersonID, rich.PersonID)
        self.assertEqual(self.db.get(Rental, rental.RentalID).RenterID, rich.PersonID)
        self.assertEqual(self.db.get(Repair, repair.RepairID).RepairerID, rich.PersonID)
        self.assertEqual(loan_service.list_borrows(self.db, person_id=rich.PersonID)[0].BorrowID, borrow.BorrowID)
        self.assertEqual(self.db.get(Worksite, worksite.WorksiteID).ContactPersonID, rich.PersonID)
        self.assertEqual(person_service.find_duplicate_groups(self.db), [])

    def test_single_member_group_is_not_merged(self):
        person = self.make_person()
        self.assertIsNone(person_service.merge_persons(self.db, [person]))


class OrphanTests(StoreTestCase):
    def test_deleted_person_leaves_orphans_that_can_be_reassigned(self):
        gone = self.make_person("Gone", "Gus")
        kept = self.make_person("Kept", "Kim")
        equipment = self.make_equipment()
        loan = loan_service.add_loan(self.db, equipment.EquipmentID, gone.PersonID, D0, D0 + timedelta(days=2))
        borrow = self.make_borrow(gone)

        person_service.delete_person(self.db, gone)

        self.assertEqual([item.LoanID for item in person_service.orphaned_loans(self.db)], [loan.LoanID])
        self.assertEqual([item.BorrowID for item in person_service.orphaned_borrows(self.db)], [borrow.BorrowID])

        person_service.reassign_loan(self.db, loan, kept.PersonID)
        person_service.reassign_borrow(self.db, borrow, kept.PersonID)

        self.assertEqual(person_service.orphaned_loans(self.db), [])
        self.assertEqual(person_service.orphaned_borrows(self.db), [])


class RoleTests(StoreTestCase):
    def test_client_list_includes_persons_without_role(self):
        self.make_person("Anon", "A")
        self.make_person("Client", "C", role="client")
        self.make_person("Mechanic", "M", role="mechanic")

        clients = {person.LastName for person in person_service.list_persons(self.db, role="client")}
        mechanics = {person.LastName for person in person_service.list_persons(self.db, role="mechanic")}

        self.assertEqual(clients, {"Anon", "Client"})
        self.assertEqual(mechanics, {"Mechanic"})
        self.assertEqual(len(person_service.list_persons(self.db)), 3)

    def test_role_is_normalized(self):
        person = person_service.add_person(self.db, LastName="  Agency ", Role="Rental-Agency")
        self.assertEqual(person.LastName, "Agency")
        self.assertEqual(person.Role, person_service.ROLE_RENTAL_AGENCY)
        with self.assertRaises(ValueError):
            person_service.normalize_role("plumber")
        self.assertIsNone(person_service.normalize_role("  "))

    def test_touch_last_contacted(self):
        person = self.make_person()
        person_service.touch_last_contacted(self.db, person, now=D0)
        self.assertEqual(person.LastContactedAt, D0)


class WorksiteTests(StoreTestCase):
    def test_assignment_and_worksite_deletion(self):
        worksite = site_service.add_worksite(self.db, Name="Bridge", StartDate=D0)
        other = site_service.add_worksite(self.db, Name="Tunnel")
        worker = self.make_person("Worker", "Will", role="employee")
        idle = self.make_person("Idle", "Ida", role="employee")
        self.make_person("Client", "Cleo", role="client")

        site_service.assign_employee(self.db, worker, worksite.WorksiteID)

        self.assertEqual([p.PersonID for p in site_service.employees_for_worksite(self.db, worksite.WorksiteID)], [worker.PersonID])
        self.assertEqual([p.PersonID for p in site_service.employees_without_worksite(self.db)], [idle.PersonID])
        self.assertEqual(
            [p.PersonID for p in site_service.available_employees(self.db, worksite.WorksiteID)], [idle.PersonID]
        )
        self.assertEqual(len(site_service.available_employees(self.db, other.WorksiteID)), 2)

        site_service.delete_worksite(self.db, worksite)
        self.db.refresh(worker)
        self.assertIsNone(worker.WorksiteID)

    def test_status_and_period(self):
        worksite = site_service.add_worksite(
            self.db, Name="Bridge", StartDate=datetime(2025, 5, 1), EndDate=datetime(2025, 6, 30)
        )
        self.assertEqual(site_service.worksite_status(worksite, now=datetime(2025, 4, 1)), site_service.WORKSITE_PLANNED)
        self.assertEqual(site_service.worksite_status(worksite, now=datetime(2025, 5, 2)), site_service.WORKSITE_ACTIVE)
        site_service.update_worksite(self.db, worksite, IsActive=False)
        self.assertEqual(site_service.worksite_status(worksite, now=datetime(2025, 7, 1)), site_service.WORKSITE_FINISHED)
        self.assertEqual(site_service.worksite_period(worksite), "01/05/2025 - 30/06/2025")

    def test_storage_location_address(self):
        location = site_service.add_storage_location(
            self.db, Name="Depot", Address="1 Main St", Building="B", Floor="2", Room=""
        )
        self.assertEqual(site_service.full_address(location), "B, Floor 2")
        equipment = self.make_equipment(StorageLocationID=location.StorageLocationID)
        self.assertEqual(
            [item.EquipmentID for item in site_service.equipment_in_location(self.db, location.StorageLocationID)],
            [equipment.EquipmentID],
        )


if __name__ == "__main__":
    unittest.main()
