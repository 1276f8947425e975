#!/usr/bin/env python3
"""
Test Suite for the Supabase Collaborators

Exercises the record store queries, the tracking compare-and-swap filter,
the e-mail edge function call and the credential lookups against a mocked
Supabase client.
"""

import os
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, call, patch

# Add project root to path
sys.path.append(str(Path(__file__).parent))

from reminder_scheduler import DispatchConfig, PaymentReminderScheduler, ReminderCategory, ReminderTracking, TableConfig
from src.config_loader import create_supabase_client, get_supabase_credentials, is_dry_run
from src.supabase_store import SupabaseEmailDispatcher, SupabaseReminderStore, TRACKING_VERSION_PATH
from test_reminder_scheduler import NOW


def mock_client(*results):
    """Client whose query builder chains to itself and returns `results` in order"""
    query = MagicMock()
    for method in ("select", "eq", "is_", "limit", "update", "insert"):
        getattr(query, method).return_value = query
    query.execute.side_effect = [MagicMock(data=data) for data in results]
    client = MagicMock()
    client.table.return_value = query
    return client, query


class TestSupabaseReminderStore(unittest.TestCase):

    def test_students_with_reminders_enabled(self):
        client, query = mock_client([
            {"id": "s1", "email": "asha@example.com", "first_name": "Asha", "last_name": "Rao", "cohort_id": "c1"},
            {"id": "s2", "email": None, "first_name": "Ben"},
        ])
        store = SupabaseReminderStore(client)

        students = store.get_students_with_payment_reminders()

        self.assertEqual([s.id for s in students], ["s1"])
        self.assertEqual(students[0].display_name, "Asha Rao")
        client.table.assert_called_with("cohort_students")
        query.eq.assert_called_with("payment_reminders_enabled", True)

    def test_student_payments(self):
        client, _ = mock_client([
            {"id": "pay-1", "student_id": "s1", "payment_plan": "sem_wise", "scholarship_id": None},
        ])
        payments = SupabaseReminderStore(client).get_student_payments()
        self.assertEqual(payments[0].payment_plan, "sem_wise")
        self.assertIsNone(payments[0].scholarship_id)

    def test_custom_fee_structure_preferred(self):
        client, query = mock_client([{
            "id": "fs-custom", "student_id": "s1", "cohort_id": "c1", "structure_type": "custom",
            "sem_wise_dates": {"semester-1-instalment-0": "2024-03-01"},
        }])

        fee = SupabaseReminderStore(client).get_fee_structure("s1", "c1")

        self.assertEqual(fee.id, "fs-custom")
        self.assertEqual(fee.structure_type, "custom")
        self.assertEqual(query.execute.call_count, 1)
        query.eq.assert_has_calls([call("student_id", "s1"), call("structure_type", "custom")])

    def test_falls_back_to_cohort_fee_structure(self):
        client, query = mock_client([], [{"id": "fs-cohort", "cohort_id": "c1", "structure_type": "cohort"}])

        fee = SupabaseReminderStore(client).get_fee_structure("s1", "c1")

        self.assertEqual(fee.id, "fs-cohort")
        query.eq.assert_has_calls([call("cohort_id", "c1"), call("structure_type", "cohort")])

    def test_no_fee_structure_without_cohort(self):
        client, query = mock_client([])
        self.assertIsNone(SupabaseReminderStore(client).get_fee_structure("s1", None))
        self.assertEqual(query.execute.call_count, 1)

    def test_reminder_tracking_read(self):
        client, _ = mock_client(
            [{"reminder_tracking": {"version": 2, "obligations": {}}}],
            [],
        )
        store = SupabaseReminderStore(client)
        self.assertEqual(store.get_reminder_tracking("pay-1").version, 2)
        self.assertEqual(store.get_reminder_tracking("pay-2"), ReminderTracking())

    def test_tracking_write_is_conditional_on_version(self):
        client, query = mock_client([{"id": "pay-1"}], [])
        store = SupabaseReminderStore(client)
        tracking = ReminderTracking(version=2).record_sends([("pay-1:semester-1-instalment-0", ReminderCategory.OVERDUE)], NOW)

        self.assertTrue(store.update_reminder_tracking("pay-1", tracking, 2))
        self.assertFalse(store.update_reminder_tracking("pay-1", tracking, 2))

        query.update.assert_called_with({"reminder_tracking": tracking.to_blob()})
        query.eq.assert_any_call("id", "pay-1")
        query.eq.assert_any_call(TRACKING_VERSION_PATH, "2")
        query.is_.assert_not_called()

    def test_first_tracking_write_matches_missing_version(self):
        client, query = mock_client([{"id": "pay-1"}])
        tracking = ReminderTracking().record_sends([("pay-1:semester-1-instalment-0", ReminderCategory.OVERDUE)], NOW)

        self.assertTrue(SupabaseReminderStore(client).update_reminder_tracking("pay-1", tracking, 0))
        query.is_.assert_called_once_with(TRACKING_VERSION_PATH, "null")

    def test_log_communication_uses_configured_table(self):
        client, query = mock_client([{"id": 1}])
        store = SupabaseReminderStore(client, TableConfig(communication_log="email_log"))

        store.log_communication({"channel": "email"})

        client.table.assert_called_with("email_log")
        query.insert.assert_called_once_with({"channel": "email"})


class TestSupabaseEmailDispatcher(unittest.TestCase):

    recipient = {"email": "asha@example.com", "name": "Asha Rao"}

    def test_invokes_email_function(self):
        client = MagicMock()
        result = SupabaseEmailDispatcher(client).send(self.recipient, "Subject", "<p>Body</p>", {"run_id": "r1"})

        self.assertTrue(result.success)
        client.functions.invoke.assert_called_once_with("send-email", invoke_options={"body": {
            "type": "custom",
            "subject": "Subject",
            "content": "<p>Body</p>",
            "recipient": {"email": "asha@example.com", "name": "Asha Rao"},
            "context": {"run_id": "r1"},
        }})

    def test_function_error_becomes_failed_result(self):
        client = MagicMock()
        client.functions.invoke.side_effect = RuntimeError("Edge Function returned a non-2xx status code")

        result = SupabaseEmailDispatcher(client).send(self.recipient, "Subject", "Body", {})

        self.assertFalse(result.success)
        self.assertIn("non-2xx", result.message)

    def test_dry_run_sends_nothing(self):
        client = MagicMock()
        result = SupabaseEmailDispatcher(client, DispatchConfig(dry_run=True)).send(self.recipient, "S", "B", {})
        self.assertTrue(result.success)
        client.functions.invoke.assert_not_called()


class TestConfigLoader(unittest.TestCase):

    def test_service_role_key_preferred(self):
        env = {
            "SUPABASE_URL": "https://project.supabase.co",
            "SUPABASE_ANON_KEY": "anon",
            "SUPABASE_SERVICE_ROLE_KEY": "service",
        }
        with patch.dict(os.environ, env, clear=True):
            self.assertEqual(get_supabase_credentials(), ("https://project.supabase.co", "service"))

    def test_blank_key_falls_through(self):
        env = {"SUPABASE_URL": "https://project.supabase.co", "SUPABASE_SERVICE_ROLE_KEY": "  ", "SUPABASE_KEY": "key"}
        with patch.dict(os.environ, env, clear=True):
            self.assertEqual(get_supabase_credentials()[1], "key")

    def test_missing_credentials(self):
        with patch.dict(os.environ, {"SUPABASE_URL": "https://project.supabase.co"}, clear=True):
            with self.assertRaises(RuntimeError):
                get_supabase_credentials()

    def test_dry_run_flag(self):
        for value, expected in (("1", True), ("Yes", True), ("on", True), ("0", False), ("", False)):
            with self.subTest(value=value):
                with patch.dict(os.environ, {"PAYMENT_REMINDER_DRY_RUN": value}, clear=True):
                    self.assertEqual(is_dry_run(), expected)

    def test_client_creation(self):
        env = {"SUPABASE_URL": "https://project.supabase.co", "SUPABASE_KEY": "key"}
        with patch.dict(os.environ, env, clear=True), \
                patch("src.config_loader.create_client") as create_client:
            create_supabase_client()
        create_client.assert_called_once_with("https://project.supabase.co", "key")

    def test_scheduler_from_config(self):
        client = MagicMock()
        with patch.dict(os.environ, {"PAYMENT_REMINDER_DRY_RUN": "true"}, clear=True), \
                patch("src.config_loader.create_supabase_client", return_value=client):
            scheduler = PaymentReminderScheduler.from_config()

        self.assertIsInstance(scheduler.store, SupabaseReminderStore)
        self.assertIsInstance(scheduler.dispatcher, SupabaseEmailDispatcher)
        self.assertTrue(scheduler.dispatcher.config.dry_run)
        self.assertIs(scheduler.store.client, client)


def run_test_suite():
    """Run the Supabase collaborator tests with detailed reporting"""
    suite = unittest.TestSuite()
    for test_class in (TestSupabaseReminderStore, TestSupabaseEmailDispatcher, TestConfigLoader):
        suite.addTests(unittest.TestLoader().loadTestsFromTestCase(test_class))

    runner = unittest.TextTestRunner(verbosity=2, stream=sys.stdout)
    result = runner.run(suite)

    print(f"\n{'='*60}")
    print(f"TEST SUMMARY")
    print(f"{'='*60}")
    print(f"Tests run: {result.testsRun}")
    print(f"Failures: {len(result.failures)}")
    print(f"Errors: {len(result.errors)}")

    return result.wasSuccessful()


if __name__ == '__main__':
    success = run_test_suite()
    sys.exit(0 if success else 1)
