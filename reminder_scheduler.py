#!/usr/bin/env python3
"""
Payment Reminder Scheduler - Due-Date Reminder Business Logic

This scheduler derives every payable installment from a student's fee
structure and payment plan, classifies each one against today's date and
dispatches at most one reminder per installment per calendar day.
"""

import asyncio
import copy
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta, timezone, tzinfo
from enum import Enum
from math import ceil
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

import yaml
from tqdm import tqdm

from email_templates import (
    ReminderEmailContext, build_test_message, get_email_content, get_email_subject
)

logger = logging.getLogger(__name__)

# Type aliases for collaborators - anything exposing the same methods works
ReminderStore = Any  # src.supabase_store.SupabaseReminderStore
EmailDispatcher = Any  # src.supabase_store.SupabaseEmailDispatcher

# ============================================================================
# DOMAIN-SPECIFIC LANGUAGE (DSL) FOR PAYMENT REMINDERS
# ============================================================================

class ReminderCategory(Enum):
    """Reminder categories, at most one applies to an installment on a given day"""
    SEVEN_DAYS_BEFORE = "seven_days_before"
    TWO_DAYS_BEFORE = "two_days_before"
    ON_DUE_DATE = "on_due_date"
    OVERDUE = "overdue"

    @classmethod
    def from_value(cls, value: Optional[str]) -> Optional['ReminderCategory']:
        """Parse a stored category, accepting the legacy tag spellings"""
        if not value:
            return None
        value = _LEGACY_CATEGORY_TAGS.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return None


_LEGACY_CATEGORY_TAGS = {
    '7_days_before': ReminderCategory.SEVEN_DAYS_BEFORE.value,
    '2_days_before': ReminderCategory.TWO_DAYS_BEFORE.value,
    'overdue_reminder': ReminderCategory.OVERDUE.value,
}


class PaymentPlanType(Enum):
    """Payment plan tags stored on a student's payment record"""
    ONE_SHOT = "one_shot"
    SEM_WISE = "sem_wise"
    INSTALMENT_WISE = "instalment_wise"

    @classmethod
    def from_tag(cls, tag: Optional[str]) -> Optional['PaymentPlanType']:
        try:
            return cls((tag or '').strip())
        except ValueError:
            return None


class ResultStatus(Enum):
    """Communication log status values"""
    SENT = "sent"
    FAILED = "failed"


class TrackingConflictError(RuntimeError):
    """Raised when a tracking record keeps changing under a compare-and-swap write"""


@dataclass
class ReminderTimingRules:
    """Day offsets that trigger each reminder category"""
    seven_days_before: int = 7
    two_days_before: int = 2
    on_due_date: int = 0
    overdue_offsets: List[int] = field(default_factory=lambda: [2, 3, 5, 7, 10])


@dataclass
class DispatchConfig:
    """E-mail dispatch settings"""
    dry_run: bool = False
    email_function: str = "send-email"
    organization_name: str = "LIT OS"
    support_email: str = ""


@dataclass
class TableConfig:
    """Record store table and column names"""
    students: str = "cohort_students"
    payments: str = "student_payments"
    fee_structures: str = "fee_structures"
    communication_log: str = "communication_history"
    reminder_opt_in_column: str = "payment_reminders_enabled"


def _setting(section: Dict[str, Any], key: str, default: Any) -> Any:
    """YAML value for key, the default when the key is missing or left empty"""
    value = section.get(key)
    return default if value is None else value


@dataclass
class ReminderConfig:
    """DSL for overall reminder scheduling configuration"""
    timing: ReminderTimingRules = field(default_factory=ReminderTimingRules)
    timezone: str = "UTC"
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    tables: TableConfig = field(default_factory=TableConfig)
    tracking_cas_attempts: int = 3
    show_progress: bool = False

    def zone(self) -> tzinfo:
        """Timezone used to turn 'now' into a calendar date"""
        if not self.timezone or self.timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.timezone)

    @classmethod
    def from_yaml(cls, yaml_path: Optional[str]) -> 'ReminderConfig':
        """Load configuration from YAML file"""
        config = cls()
        if not yaml_path or not Path(yaml_path).exists():
            return config

        with open(yaml_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        if 'timing' in data:
            timing = data['timing'] or {}
            config.timing = ReminderTimingRules(
                seven_days_before=_setting(timing, 'seven_days_before', 7),
                two_days_before=_setting(timing, 'two_days_before', 2),
                on_due_date=_setting(timing, 'on_due_date', 0),
                overdue_offsets=list(_setting(timing, 'overdue_offsets', [2, 3, 5, 7, 10])),
            )

        config.timezone = _setting(data, 'timezone', config.timezone)

        if 'dispatch' in data:
            dispatch = data['dispatch'] or {}
            config.dispatch = DispatchConfig(
                dry_run=bool(_setting(dispatch, 'dry_run', False)),
                email_function=_setting(dispatch, 'email_function', "send-email"),
                organization_name=_setting(dispatch, 'organization_name', "LIT OS"),
                support_email=_setting(dispatch, 'support_email', ""),
            )

        if 'tables' in data:
            tables = data['tables'] or {}
            defaults = TableConfig()
            config.tables = TableConfig(
                students=_setting(tables, 'students', defaults.students),
                payments=_setting(tables, 'payments', defaults.payments),
                fee_structures=_setting(tables, 'fee_structures', defaults.fee_structures),
                communication_log=_setting(tables, 'communication_log', defaults.communication_log),
                reminder_opt_in_column=_setting(tables, 'reminder_opt_in_column', defaults.reminder_opt_in_column),
            )

        if 'tracking' in data:
            config.tracking_cas_attempts = _setting(data['tracking'] or {}, 'cas_attempts', config.tracking_cas_attempts)

        if 'processing' in data:
            config.show_progress = bool(_setting(data['processing'] or {}, 'show_progress', False))

        return config

# ============================================================================
# DATE HELPERS
# ============================================================================

def parse_due_date(value: Any) -> Optional[date]:
    """Parse a stored due date ('YYYY-MM-DD' or an ISO datetime)"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value.strip()) < 10:
        return None
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError:
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# STUDENT, PAYMENT AND FEE STRUCTURE RECORDS
# ============================================================================

@dataclass
class Student:
    """A student who opted into e-mail payment reminders"""
    id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    cohort_id: Optional[str] = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip() or "Student"

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> Optional['Student']:
        """Create student from database row, None when it cannot receive e-mail"""
        email = (row.get('email') or '').strip()
        if not row.get('id') or not email:
            logger.warning(f"Ignoring student row without id or email: {row.get('id')}")
            return None
        return cls(
            id=str(row['id']),
            email=email,
            first_name=row.get('first_name') or '',
            last_name=row.get('last_name') or '',
            cohort_id=str(row['cohort_id']) if row.get('cohort_id') else None,
        )


@dataclass
class StudentPayment:
    """One payment record per student, carrying the chosen payment plan"""
    id: str
    student_id: str
    payment_plan: Optional[str] = None
    scholarship_id: Optional[str] = None

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'StudentPayment':
        return cls(
            id=str(row['id']),
            student_id=str(row['student_id']),
            payment_plan=row.get('payment_plan'),
            scholarship_id=str(row['scholarship_id']) if row.get('scholarship_id') else None,
        )


@dataclass
class FeeStructure:
    """Cohort-level or student-specific fee structure with its due-date maps"""
    id: Optional[str] = None
    cohort_id: Optional[str] = None
    student_id: Optional[str] = None
    structure_type: str = "cohort"
    one_shot_dates: Dict[str, Any] = field(default_factory=dict)
    sem_wise_dates: Dict[str, Any] = field(default_factory=dict)
    instalment_wise_dates: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_db_row(cls, row: Dict[str, Any]) -> 'FeeStructure':
        return cls(
            id=str(row['id']) if row.get('id') else None,
            cohort_id=str(row['cohort_id']) if row.get('cohort_id') else None,
            student_id=str(row['student_id']) if row.get('student_id') else None,
            structure_type=row.get('structure_type') or 'cohort',
            one_shot_dates=_json_map(row.get('one_shot_dates')),
            sem_wise_dates=_json_map(row.get('sem_wise_dates')),
            instalment_wise_dates=_json_map(row.get('instalment_wise_dates')),
        )


def _json_map(value: Any) -> Dict[str, Any]:
    """JSON columns may arrive decoded or as text"""
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value.strip():
        try:
            decoded = json.loads(value)
        except ValueError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}

# ============================================================================
# PAYMENT PLANS - TAGGED UNION OVER THE THREE DUE-DATE SHAPES
# ============================================================================

INSTALLMENT_KEY_PATTERN = re.compile(r'^semester-(\d+)-instalment-(\d+)$')
NESTED_SEMESTER_PATTERN = re.compile(r'^semester_(\d+)$')
NESTED_INSTALLMENT_PATTERN = re.compile(r'^installment_(\d+)$')
ONE_SHOT_KEYS = ('program_fee_due_date', 'one-shot')


@dataclass(frozen=True, order=True)
class InstallmentKey:
    """Structured (semester, zero-based installment index) key"""
    semester: int
    index: int

    @property
    def installment_number(self) -> int:
        return self.index + 1

    @classmethod
    def parse(cls, raw: str) -> Optional['InstallmentKey']:
        match = INSTALLMENT_KEY_PATTERN.match(str(raw).strip())
        if not match:
            return None
        return cls(semester=int(match.group(1)), index=int(match.group(2)))

    def to_key(self) -> str:
        return f"semester-{self.semester}-instalment-{self.index}"


@dataclass
class OneShotPlan:
    due_date: date
    plan_type: ClassVar[PaymentPlanType] = PaymentPlanType.ONE_SHOT

    def due_dates(self) -> Dict[InstallmentKey, date]:
        return {InstallmentKey(semester=1, index=0): self.due_date}


@dataclass
class SemesterWisePlan:
    dates: Dict[InstallmentKey, date]
    plan_type: ClassVar[PaymentPlanType] = PaymentPlanType.SEM_WISE

    def due_dates(self) -> Dict[InstallmentKey, date]:
        return dict(self.dates)


@dataclass
class InstallmentWisePlan:
    dates: Dict[InstallmentKey, date]
    plan_type: ClassVar[PaymentPlanType] = PaymentPlanType.INSTALMENT_WISE

    def due_dates(self) -> Dict[InstallmentKey, date]:
        return dict(self.dates)


PaymentPlan = Union[OneShotPlan, SemesterWisePlan, InstallmentWisePlan]


def decode_one_shot_dates(raw: Dict[str, Any]) -> Optional[date]:
    """Pick the single one-shot due date, preferring the known key names"""
    if not raw:
        return None
    ordered = [k for k in ONE_SHOT_KEYS if k in raw] + [k for k in raw if k not in ONE_SHOT_KEYS]
    for key in ordered:
        due = parse_due_date(raw[key])
        if due:
            return due
    return None


def decode_installment_dates(raw: Dict[str, Any], semester_only: bool = False) -> Dict[InstallmentKey, date]:
    """
    Decode a semester/installment date map into structured keys.

    Accepts the flat shape {"semester-1-instalment-0": "2024-03-01"} and the
    nested shape {"semesters": {"semester_1": {"due_date": ...}}} or
    {"semesters": {"semester_1": {"installments": {"installment_0": ...}}}}.
    Keys or values that do not decode are skipped. semester_only keeps just
    the first installment of each semester and ignores nested installment maps.
    """
    decoded: Dict[InstallmentKey, date] = {}
    if not raw:
        return decoded

    for raw_key, raw_value in raw.items():
        if raw_key == 'semesters' and isinstance(raw_value, dict):
            decoded.update(_decode_nested_semesters(raw_value, semester_only))
            continue
        key = InstallmentKey.parse(raw_key)
        due = parse_due_date(raw_value)
        if key is None or due is None:
            logger.debug(f"Skipping malformed due-date entry {raw_key!r}: {raw_value!r}")
            continue
        if semester_only and key.index != 0:
            logger.debug(f"Skipping installment entry {raw_key!r} in a semester-wise map")
            continue
        decoded[key] = due

    return decoded


def _decode_nested_semesters(semesters: Dict[str, Any], semester_only: bool = False) -> Dict[InstallmentKey, date]:
    decoded: Dict[InstallmentKey, date] = {}
    for semester_key, semester_data in semesters.items():
        match = NESTED_SEMESTER_PATTERN.match(str(semester_key))
        if not match or not isinstance(semester_data, dict):
            logger.debug(f"Skipping malformed semester entry {semester_key!r}")
            continue
        semester = int(match.group(1))

        due = parse_due_date(semester_data.get('due_date'))
        if due:
            decoded[InstallmentKey(semester=semester, index=0)] = due

        installments = semester_data.get('installments')
        if isinstance(installments, dict) and not semester_only:
            for installment_key, value in installments.items():
                inst_match = NESTED_INSTALLMENT_PATTERN.match(str(installment_key))
                due = parse_due_date(value)
                if not inst_match or due is None:
                    logger.debug(f"Skipping malformed installment entry {semester_key}.{installment_key}")
                    continue
                decoded[InstallmentKey(semester=semester, index=int(inst_match.group(1)))] = due
    return decoded


def _build_one_shot(fee_structure: FeeStructure) -> Optional[PaymentPlan]:
    due = decode_one_shot_dates(fee_structure.one_shot_dates)
    return OneShotPlan(due_date=due) if due else None


def _build_sem_wise(fee_structure: FeeStructure) -> Optional[PaymentPlan]:
    dates = decode_installment_dates(fee_structure.sem_wise_dates, semester_only=True)
    return SemesterWisePlan(dates=dates) if dates else None


def _build_instalment_wise(fee_structure: FeeStructure) -> Optional[PaymentPlan]:
    dates = decode_installment_dates(fee_structure.instalment_wise_dates)
    return InstallmentWisePlan(dates=dates) if dates else None


# Every PaymentPlanType must have a builder
_PLAN_BUILDERS: Dict[PaymentPlanType, Callable[[FeeStructure], Optional[PaymentPlan]]] = {
    PaymentPlanType.ONE_SHOT: _build_one_shot,
    PaymentPlanType.SEM_WISE: _build_sem_wise,
    PaymentPlanType.INSTALMENT_WISE: _build_instalment_wise,
}


def build_payment_plan(fee_structure: FeeStructure, plan_tag: Optional[str]) -> Optional[PaymentPlan]:
    """Select and decode the one due-date map named by the plan tag"""
    plan_type = PaymentPlanType.from_tag(plan_tag)
    if plan_type is None:
        return None
    return _PLAN_BUILDERS[plan_type](fee_structure)

# ============================================================================
# DUE-DATE EXTRACTOR
# ============================================================================

@dataclass
class DueDateObligation:
    """A single payable due date, derived fresh on every run"""
    id: str
    student_id: str
    payment_id: str
    due_date: date
    installment_number: int
    semester_number: int
    payment_type: str = "program_fee"
    payment_plan: Optional[str] = None


class DueDateExtractor:
    """Turns a fee structure and payment plan into a flat set of obligations"""

    def extract(self, fee_structure: FeeStructure, payment: StudentPayment) -> List[DueDateObligation]:
        plan = build_payment_plan(fee_structure, payment.payment_plan)
        if plan is None:
            return []

        obligations = []
        for key, due in sorted(plan.due_dates().items()):
            obligations.append(DueDateObligation(
                id=f"{payment.id}:{key.to_key()}",
                student_id=payment.student_id,
                payment_id=payment.id,
                due_date=due,
                installment_number=key.installment_number,
                semester_number=key.semester,
                payment_plan=plan.plan_type.value,
            ))
        return obligations

# ============================================================================
# REMINDER CLASSIFIER
# ============================================================================

class ReminderClassifier:
    """Pure mapping from day offsets to a reminder category"""

    def __init__(self, rules: Optional[ReminderTimingRules] = None):
        self.rules = rules or ReminderTimingRules()
        self._overdue_offsets = frozenset(self.rules.overdue_offsets)

    @staticmethod
    def day_offsets(due_date: date, today: date) -> Tuple[int, int]:
        """Return (days_remaining, days_overdue) at whole-day granularity"""
        days_remaining = ceil((due_date - today) / timedelta(days=1))
        return days_remaining, max(0, -days_remaining)

    def classify_offsets(self, days_remaining: int, days_overdue: int) -> Optional[ReminderCategory]:
        if days_overdue > 0 and days_overdue in self._overdue_offsets:
            return ReminderCategory.OVERDUE
        if days_remaining == self.rules.seven_days_before:
            return ReminderCategory.SEVEN_DAYS_BEFORE
        if days_remaining == self.rules.two_days_before:
            return ReminderCategory.TWO_DAYS_BEFORE
        if days_remaining == self.rules.on_due_date:
            return ReminderCategory.ON_DUE_DATE
        return None

    def classify(self, due_date: date, today: date) -> Optional[ReminderCategory]:
        return self.classify_offsets(*self.day_offsets(due_date, today))


_DEFAULT_CLASSIFIER = ReminderClassifier()


def classify_reminder(due_date: date, today: date) -> Optional[ReminderCategory]:
    """Classify with the default timing rules"""
    return _DEFAULT_CLASSIFIER.classify(due_date, today)

# ============================================================================
# REMINDER TRACKING AND DEDUP GUARD
# ============================================================================

@dataclass
class TrackingEntry:
    """Last reminder sent for one obligation"""
    last_reminder_type: Optional[str] = None
    last_reminder_sent_at: Optional[str] = None
    reminder_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackingEntry':
        category = ReminderCategory.from_value(data.get('last_reminder_type'))
        return cls(
            last_reminder_type=category.value if category else data.get('last_reminder_type'),
            last_reminder_sent_at=data.get('last_reminder_sent_at'),
            reminder_count=int(data.get('reminder_count') or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_reminder_type': self.last_reminder_type,
            'last_reminder_sent_at': self.last_reminder_sent_at,
            'reminder_count': self.reminder_count,
        }


@dataclass
class ReminderTracking:
    """
    Persisted reminder state for one student payment.

    The top-level slot mirrors the most recent send across the payment; the
    per-obligation map is what the dedup guard reads. `version` increments on
    every write and is the compare-and-swap token.
    """
    last_reminder_type: Optional[str] = None
    last_reminder_sent_at: Optional[str] = None
    reminder_count: int = 0
    version: int = 0
    obligations: Dict[str, TrackingEntry] = field(default_factory=dict)

    @classmethod
    def from_blob(cls, blob: Optional[Dict[str, Any]]) -> 'ReminderTracking':
        blob = _json_map(blob)
        summary = TrackingEntry.from_dict(blob)
        obligations = {}
        for obligation_id, entry in (blob.get('obligations') or {}).items():
            if isinstance(entry, dict):
                obligations[str(obligation_id)] = TrackingEntry.from_dict(entry)
        return cls(
            last_reminder_type=summary.last_reminder_type,
            last_reminder_sent_at=summary.last_reminder_sent_at,
            reminder_count=summary.reminder_count,
            version=int(blob.get('version') or 0),
            obligations=obligations,
        )

    def to_blob(self) -> Dict[str, Any]:
        return {
            'last_reminder_type': self.last_reminder_type,
            'last_reminder_sent_at': self.last_reminder_sent_at,
            'reminder_count': self.reminder_count,
            'version': self.version,
            'obligations': {k: v.to_dict() for k, v in self.obligations.items()},
        }

    @property
    def is_legacy(self) -> bool:
        """Written before per-obligation tracking existed"""
        return not self.obligations and bool(self.last_reminder_sent_at)

    def entry_for(self, obligation_id: str) -> Optional[TrackingEntry]:
        return self.obligations.get(obligation_id)

    def record_sends(self, sends: List[Tuple[str, ReminderCategory]], sent_at: datetime) -> 'ReminderTracking':
        """Return a new tracking record with the given sends applied"""
        updated = copy.deepcopy(self)
        sent_at_iso = sent_at.isoformat()
        for obligation_id, category in sends:
            previous = updated.obligations.get(obligation_id)
            updated.obligations[obligation_id] = TrackingEntry(
                last_reminder_type=category.value,
                last_reminder_sent_at=sent_at_iso,
                reminder_count=(previous.reminder_count if previous else 0) + 1,
            )
            updated.last_reminder_type = category.value
        if sends:
            updated.last_reminder_sent_at = sent_at_iso
            updated.reminder_count = self.reminder_count + len(sends)
        updated.version = self.version + 1
        return updated


class DedupGuard:
    """At most one reminder per obligation per calendar day"""

    def __init__(self, tz: tzinfo = timezone.utc):
        self.tz = tz

    def sent_on(self, sent_at: Optional[str], today: date) -> bool:
        parsed = parse_timestamp(sent_at)
        return parsed is not None and parsed.astimezone(self.tz).date() == today

    def allows(self, obligation: DueDateObligation, tracking: ReminderTracking,
               today: date) -> Tuple[bool, Optional[str]]:
        """Check whether a reminder may go out for this obligation today"""
        entry = tracking.entry_for(obligation.id)
        if entry is not None:
            last_sent, last_type = entry.last_reminder_sent_at, entry.last_reminder_type
        elif tracking.is_legacy:
            last_sent, last_type = tracking.last_reminder_sent_at, tracking.last_reminder_type
        else:
            return True, None

        if self.sent_on(last_sent, today):
            return False, f"Reminder already sent today ({last_type or 'unknown type'})"
        return True, None

# ============================================================================
# RESULTS
# ============================================================================

@dataclass
class DispatchResult:
    """Outcome reported by the notification dispatcher"""
    success: bool
    message: str


@dataclass
class PendingReminder:
    """An obligation that passed classification and the dedup guard"""
    obligation: DueDateObligation
    category: ReminderCategory
    days_remaining: int
    days_overdue: int


@dataclass
class ReminderResult:
    """Per-obligation (or per-student) outcome reported in the response"""
    student_id: str
    success: bool
    message: str
    email: Optional[str] = None
    payment_id: Optional[str] = None
    obligation_id: Optional[str] = None
    reminder_type: Optional[str] = None
    installment_number: Optional[int] = None
    semester_number: Optional[int] = None
    due_date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class ReminderRunResponse:
    """Envelope returned by every run"""
    success: bool
    message: str
    timestamp: str
    results: List[ReminderResult] = field(default_factory=list)
    debug: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        body = {
            'success': self.success,
            'message': self.message,
            'timestamp': self.timestamp,
            'results': [r.to_dict() for r in self.results],
        }
        if self.debug is not None:
            body['debug'] = self.debug
        return body

# ============================================================================
# BATCH ORCHESTRATOR
# ============================================================================

class PaymentReminderScheduler:
    """Main orchestrator that coordinates extraction, classification, dedup and dispatch"""

    def __init__(self, store: ReminderStore, dispatcher: EmailDispatcher,
                 config: Optional[ReminderConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or ReminderConfig()
        self.tz = self.config.zone()
        self.clock = clock or _utc_now
        self.extractor = DueDateExtractor()
        self.classifier = ReminderClassifier(self.config.timing)
        self.guard = DedupGuard(self.tz)
        self.run_id = str(uuid.uuid4())

        logger.info(f"Payment Reminder Scheduler initialized with run ID: {self.run_id}")

    @classmethod
    def from_config(cls, config: Optional[ReminderConfig] = None) -> 'PaymentReminderScheduler':
        """Build a scheduler wired to the Supabase record store and e-mail function"""
        from src.config_loader import create_supabase_client, is_dry_run
        from src.supabase_store import SupabaseEmailDispatcher, SupabaseReminderStore

        config = config or ReminderConfig()
        if is_dry_run():
            config.dispatch.dry_run = True
        client = create_supabase_client()
        return cls(
            SupabaseReminderStore(client, config.tables),
            SupabaseEmailDispatcher(client, config.dispatch),
            config,
        )

    def now(self) -> datetime:
        return self.clock().astimezone(self.tz)

    def today(self) -> date:
        return self.now().date()

    def sent_at_for(self, today: date) -> datetime:
        """Send timestamp recorded for a run dated `today`, kept on that calendar day"""
        now = self.now()
        if now.date() == today:
            return now
        return datetime.combine(today, now.timetz())

    # ------------------------------------------------------------------
    # Production pass
    # ------------------------------------------------------------------

    async def run_payment_reminders(self, today: Optional[date] = None) -> ReminderRunResponse:
        """Run the full scheduling pass for every opted-in student."""
        today = today or self.today()
        logger.info(f"Starting payment reminder processing for {today.isoformat()} (run {self.run_id})")

        # A failure here means the run cannot start at all; let it propagate
        students = await asyncio.to_thread(self.store.get_students_with_payment_reminders)
        payments = await asyncio.to_thread(self.store.get_student_payments)
        payments_by_student = {p.student_id: p for p in payments}
        logger.info(f"Found {len(students)} students with reminders enabled and {len(payments)} student payments")

        stats = {
            'students_found': len(students),
            'students_with_payments': sum(1 for s in students if s.id in payments_by_student),
            'student_payments_count': len(payments),
            'students_skipped': 0,
            'obligations_found': 0,
            'reminders_due': 0,
            'reminders_suppressed': 0,
            'reminders_sent': 0,
            'reminders_failed': 0,
            'today': today.isoformat(),
        }
        results: List[ReminderResult] = []

        for student in tqdm(students, desc="Students", disable=not self.config.show_progress):
            payment = payments_by_student.get(student.id)
            if payment is None:
                logger.info(f"Skipping student {student.email} - no payment record found")
                stats['students_skipped'] += 1
                continue
            try:
                results.extend(await self._process_student(student, payment, today, stats))
            except Exception as e:
                logger.error(f"Error processing student {student.email}: {e}", exc_info=True)
                results.append(ReminderResult(
                    student_id=student.id, email=student.email, payment_id=payment.id,
                    success=False, message=str(e),
                ))

        stats['reminders_sent'] = sum(1 for r in results if r.success)
        stats['reminders_failed'] = sum(1 for r in results if not r.success)

        logger.info(
            f"Payment reminder run {self.run_id} complete: {stats['reminders_sent']} sent, "
            f"{stats['reminders_failed']} failed, {stats['reminders_suppressed']} suppressed, "
            f"{stats['students_skipped']} students skipped"
        )

        return ReminderRunResponse(
            success=True,
            message=f"Payment reminders processed for {len(results)} installments",
            timestamp=_utc_now().isoformat(),
            results=results,
            debug=stats,
        )

    async def _process_student(self, student: Student, payment: StudentPayment,
                               today: date, stats: Dict[str, Any]) -> List[ReminderResult]:
        fee_structure = await asyncio.to_thread(self.store.get_fee_structure, student.id, student.cohort_id)
        if fee_structure is None:
            logger.info(f"Skipping student {student.email} - no fee structure found")
            stats['students_skipped'] += 1
            return []

        obligations = self.extractor.extract(fee_structure, payment)
        logger.info(f"Found {len(obligations)} due dates for student {student.email} "
                    f"with payment plan: {payment.payment_plan}")
        if not obligations:
            stats['students_skipped'] += 1
            return []
        stats['obligations_found'] += len(obligations)

        tracking = await asyncio.to_thread(self.store.get_reminder_tracking, payment.id)
        pending = self.select_due_reminders(obligations, tracking, today, stats)
        if not pending:
            return []

        # Fan out this student's dispatches, join before touching tracking
        sent_at = self.sent_at_for(today)
        outcomes = await asyncio.gather(*(
            asyncio.to_thread(self._send_reminder, student, reminder, sent_at) for reminder in pending
        ))

        sends = [(r.obligation.id, r.category) for r, result in zip(pending, outcomes) if result.success]
        if sends:
            try:
                await asyncio.to_thread(self._write_tracking, payment.id, tracking, sends, sent_at)
            except Exception as e:
                logger.error(f"Tracking update failed for payment {payment.id}: {e}")
                for result in outcomes:
                    if result.success:
                        result.success = False
                        result.message = f"Reminder sent but tracking update failed: {e}"
        return list(outcomes)

    def select_due_reminders(self, obligations: List[DueDateObligation], tracking: ReminderTracking,
                             today: date, stats: Optional[Dict[str, Any]] = None) -> List[PendingReminder]:
        """Classify each obligation and drop those the dedup guard rejects"""
        stats = stats if stats is not None else {}
        pending = []
        for obligation in obligations:
            days_remaining, days_overdue = self.classifier.day_offsets(obligation.due_date, today)
            category = self.classifier.classify_offsets(days_remaining, days_overdue)
            if category is None:
                logger.debug(f"No reminder needed for {obligation.id} ({days_remaining} days remaining)")
                continue
            stats['reminders_due'] = stats.get('reminders_due', 0) + 1

            allowed, reason = self.guard.allows(obligation, tracking, today)
            if not allowed:
                logger.info(f"Skipping installment {obligation.id} - {reason}")
                stats['reminders_suppressed'] = stats.get('reminders_suppressed', 0) + 1
                continue

            pending.append(PendingReminder(obligation, category, days_remaining, days_overdue))
        return pending

    def _send_reminder(self, student: Student, reminder: PendingReminder, sent_at: datetime) -> ReminderResult:
        """Render, dispatch and log one reminder; never raises"""
        obligation = reminder.obligation
        result = ReminderResult(
            student_id=student.id,
            email=student.email,
            payment_id=obligation.payment_id,
            obligation_id=obligation.id,
            reminder_type=reminder.category.value,
            installment_number=obligation.installment_number,
            semester_number=obligation.semester_number,
            due_date=obligation.due_date.isoformat(),
            success=False,
            message="",
        )
        try:
            context = ReminderEmailContext(
                student_name=student.display_name,
                student_email=student.email,
                payment_id=obligation.payment_id,
                due_date=obligation.due_date,
                installment_number=obligation.installment_number,
                semester_number=obligation.semester_number,
                days_remaining=reminder.days_remaining,
                days_overdue=reminder.days_overdue,
                reminder_type=reminder.category.value,
                organization_name=self.config.dispatch.organization_name,
                support_email=self.config.dispatch.support_email,
            )
            subject = get_email_subject(reminder.category, context)
            content = get_email_content(context)
            log_context = {
                'student_id': student.id,
                'payment_id': obligation.payment_id,
                'obligation_id': obligation.id,
                'reminder_type': reminder.category.value,
                'days_remaining': reminder.days_remaining,
                'days_overdue': reminder.days_overdue,
                'installment_number': obligation.installment_number,
                'semester_number': obligation.semester_number,
                'run_id': self.run_id,
            }

            dispatch = self.dispatcher.send(
                {'email': student.email, 'name': student.display_name}, subject, content, log_context
            )
            result.success, result.message = dispatch.success, dispatch.message

            self._log_communication({
                'channel': 'email',
                'type': 'automated_payment_reminder',
                'student_id': student.id,
                'recipient_email': student.email,
                'recipient_phone': None,
                'subject': subject,
                'content': content,
                'context': log_context,
                'status': (ResultStatus.SENT if dispatch.success else ResultStatus.FAILED).value,
                'sent_at': sent_at.isoformat(),
            })

            logger.info(f"Processed installment {obligation.id} for {student.email}: "
                        f"{'SUCCESS' if dispatch.success else 'FAILED'}")
        except Exception as e:
            logger.error(f"Error processing installment {obligation.id}: {e}", exc_info=True)
            result.success = False
            result.message = str(e)
        return result

    def _write_tracking(self, payment_id: str, tracking: ReminderTracking,
                        sends: List[Tuple[str, ReminderCategory]], sent_at: datetime) -> ReminderTracking:
        """Compare-and-swap the tracking record, re-reading on conflict"""
        attempts = max(1, int(self.config.tracking_cas_attempts))
        current = tracking
        for attempt in range(1, attempts + 1):
            updated = current.record_sends(sends, sent_at)
            if self.store.update_reminder_tracking(payment_id, updated, current.version):
                return updated
            logger.warning(f"Tracking for payment {payment_id} changed concurrently "
                           f"(attempt {attempt}/{attempts}), reloading")
            current = self.store.get_reminder_tracking(payment_id)
        raise TrackingConflictError(
            f"Tracking for payment {payment_id} kept changing after {attempts} attempts"
        )

    def _log_communication(self, entry: Dict[str, Any]):
        """Best-effort audit append; failures never affect the run"""
        try:
            self.store.log_communication(entry)
        except Exception as e:
            logger.warning(f"Could not log communication to {entry.get('recipient_email')}: {e}")

    # ------------------------------------------------------------------
    # Connectivity check
    # ------------------------------------------------------------------

    async def run_test_reminders(self) -> ReminderRunResponse:
        """Send one synthetic reminder per opted-in student to validate the channel."""
        logger.info("Starting test reminder processing...")
        students = await asyncio.to_thread(self.store.get_students_with_payment_reminders)
        results: List[ReminderResult] = []

        for student in tqdm(students, desc="Students", disable=not self.config.show_progress):
            results.append(await asyncio.to_thread(self._send_test_reminder, student))

        return ReminderRunResponse(
            success=True,
            message=f"Test reminders processed for {len(students)} students",
            timestamp=_utc_now().isoformat(),
            results=results,
        )

    def _send_test_reminder(self, student: Student) -> ReminderResult:
        sent_at = self.now()
        try:
            subject, content = build_test_message(student.display_name, sent_at)
            context = {
                'student_id': student.id,
                'test_timestamp': sent_at.isoformat(),
                'reminder_type': 'test_automated',
                'run_id': self.run_id,
            }
            dispatch = self.dispatcher.send(
                {'email': student.email, 'name': student.display_name}, subject, content, context
            )
            self._log_communication({
                'channel': 'email',
                'type': 'automated_test_reminder',
                'student_id': student.id,
                'recipient_email': student.email,
                'recipient_phone': None,
                'subject': subject,
                'content': content,
                'context': context,
                'status': (ResultStatus.SENT if dispatch.success else ResultStatus.FAILED).value,
                'sent_at': sent_at.isoformat(),
            })
            logger.info(f"Processed student {student.email}: {'SUCCESS' if dispatch.success else 'FAILED'}")
            return ReminderResult(student_id=student.id, email=student.email,
                                  success=dispatch.success, message=dispatch.message)
        except Exception as e:
            logger.error(f"Error processing student {student.email}: {e}", exc_info=True)
            return ReminderResult(student_id=student.id, email=student.email, success=False, message=str(e))

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def main():
    """Main entry point for the reminder scheduler"""
    import argparse
    from src.config_loader import DEFAULT_CONFIG_PATH

    parser = argparse.ArgumentParser(description='Automated Payment Reminder Scheduler')
    parser.add_argument('--config', default=str(DEFAULT_CONFIG_PATH), help='Configuration YAML path')
    parser.add_argument('--test-mode', action='store_true', help='Send one connectivity-check e-mail per student')
    parser.add_argument('--test-all-emails', action='store_true', help='Render previews of every reminder template')
    parser.add_argument('--date', help='Run as if today were this date (YYYY-MM-DD)')
    parser.add_argument('--dry-run', action='store_true', help='Do everything except actually sending e-mail')
    parser.add_argument('--progress', action='store_true', help='Show a progress bar over students')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(name)s - %(message)s'
    )
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = ReminderConfig.from_yaml(args.config)
    if args.dry_run:
        config.dispatch.dry_run = True
    if args.progress:
        config.show_progress = True

    today = None
    if args.date:
        today = parse_due_date(args.date)
        if today is None:
            parser.error(f"Invalid --date value: {args.date}")

    from reminder_endpoint import handle_request

    body = {'test_mode': args.test_mode, 'test_all_emails': args.test_all_emails}
    response = asyncio.run(handle_request("POST", body, config=config, today=today))
    print(json.dumps(response.body, indent=2, default=str))
    return 0 if response.status == 200 else 1


if __name__ == '__main__':
    raise SystemExit(main())
