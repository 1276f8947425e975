#!/usr/bin/env python3
"""
Supabase Record Store and E-mail Dispatcher

Collaborators used by PaymentReminderScheduler: reads of the reminder
population, payments and fee structures, the reminder tracking
compare-and-swap write, the communication log, and the e-mail edge function.
"""

import logging
from typing import Any, Dict, List, Optional

from supabase import Client

from reminder_scheduler import (
    DispatchConfig, DispatchResult, FeeStructure, ReminderTracking,
    Student, StudentPayment, TableConfig
)

logger = logging.getLogger(__name__)

STUDENT_COLUMNS = "id, email, first_name, last_name, cohort_id"
PAYMENT_COLUMNS = "id, student_id, payment_plan, scholarship_id"
FEE_STRUCTURE_COLUMNS = (
    "id, cohort_id, student_id, structure_type, "
    "one_shot_dates, sem_wise_dates, instalment_wise_dates"
)
TRACKING_VERSION_PATH = "reminder_tracking->>version"


class SupabaseReminderStore:
    """Record store backed by Supabase tables"""

    def __init__(self, client: Client, tables: Optional[TableConfig] = None):
        self.client = client
        self.tables = tables or TableConfig()

    def get_students_with_payment_reminders(self) -> List[Student]:
        res = (
            self.client.table(self.tables.students)
            .select(STUDENT_COLUMNS)
            .eq(self.tables.reminder_opt_in_column, True)
            .execute()
        )
        students = []
        for row in res.data or []:
            student = Student.from_db_row(row)
            if student:
                students.append(student)
        return students

    def get_student_payments(self) -> List[StudentPayment]:
        res = self.client.table(self.tables.payments).select(PAYMENT_COLUMNS).execute()
        return [StudentPayment.from_db_row(row) for row in res.data or []]

    def get_fee_structure(self, student_id: str, cohort_id: Optional[str]) -> Optional[FeeStructure]:
        """Student-specific custom structure first, then the cohort structure"""
        res = (
            self.client.table(self.tables.fee_structures)
            .select(FEE_STRUCTURE_COLUMNS)
            .eq("student_id", student_id)
            .eq("structure_type", "custom")
            .limit(1)
            .execute()
        )
        rows = res.data or []
        if rows:
            return FeeStructure.from_db_row(rows[0])

        if not cohort_id:
            return None

        res = (
            self.client.table(self.tables.fee_structures)
            .select(FEE_STRUCTURE_COLUMNS)
            .eq("cohort_id", cohort_id)
            .eq("structure_type", "cohort")
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return FeeStructure.from_db_row(rows[0]) if rows else None

    def get_reminder_tracking(self, payment_id: str) -> ReminderTracking:
        res = (
            self.client.table(self.tables.payments)
            .select("reminder_tracking")
            .eq("id", payment_id)
            .limit(1)
            .execute()
        )
        rows = res.data or []
        return ReminderTracking.from_blob(rows[0].get("reminder_tracking") if rows else None)

    def update_reminder_tracking(self, payment_id: str, tracking: ReminderTracking,
                                 expected_version: int) -> bool:
        """
        Conditionally replace the tracking blob.

        The update only matches while the stored blob still carries
        `expected_version` (records never written with a version match
        version 0). Returns False when no row matched.
        """
        query = (
            self.client.table(self.tables.payments)
            .update({"reminder_tracking": tracking.to_blob()})
            .eq("id", payment_id)
        )
        if expected_version:
            query = query.eq(TRACKING_VERSION_PATH, str(expected_version))
        else:
            query = query.is_(TRACKING_VERSION_PATH, "null")
        res = query.execute()
        return bool(res.data)

    def log_communication(self, entry: Dict[str, Any]):
        self.client.table(self.tables.communication_log).insert(entry).execute()


class SupabaseEmailDispatcher:
    """Sends reminders through the project's e-mail edge function"""

    def __init__(self, client: Client, config: Optional[DispatchConfig] = None):
        self.client = client
        self.config = config or DispatchConfig()

    def send(self, recipient: Dict[str, str], subject: str, content: str,
             context: Dict[str, Any]) -> DispatchResult:
        if self.config.dry_run:
            logger.info(f"[DRY-RUN] Would send '{subject}' to {recipient.get('email')}")
            return DispatchResult(success=True, message="Dry run: email not sent")

        body = {
            "type": "custom",
            "subject": subject,
            "content": content,
            "recipient": {"email": recipient.get("email"), "name": recipient.get("name")},
            "context": context,
        }
        try:
            self.client.functions.invoke(self.config.email_function, invoke_options={"body": body})
        except Exception as e:
            logger.error(f"Email function failed for {recipient.get('email')}: {e}")
            return DispatchResult(success=False, message=f"Failed to send email: {e}")
        return DispatchResult(success=True, message="Email sent successfully")
