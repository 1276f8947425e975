#!/usr/bin/env python3
"""
Payment Reminder Email Templates

Category-specific subjects and inline-styled HTML bodies for automated
payment reminders, the connectivity-check message used in test mode, and a
preview self-test that renders every category without touching the record
store or the e-mail channel.
"""

import html
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

# Template keys match ReminderCategory values in reminder_scheduler
SEVEN_DAYS_BEFORE = "seven_days_before"
TWO_DAYS_BEFORE = "two_days_before"
ON_DUE_DATE = "on_due_date"
OVERDUE = "overdue"

TEST_REMINDER_SUBJECT = "Test Automated Reminder"

# ============================================================================
# RENDERING CONTEXT
# ============================================================================

@dataclass
class ReminderEmailContext:
    """Everything a reminder template may reference"""
    student_name: str
    student_email: str
    payment_id: str
    due_date: date
    installment_number: int
    semester_number: int
    days_remaining: int
    days_overdue: int
    reminder_type: str
    organization_name: str = "LIT OS"
    support_email: str = ""

    @property
    def formatted_due_date(self) -> str:
        return self.due_date.strftime("%d %B %Y")

    @property
    def installment_label(self) -> str:
        return f"Semester {self.semester_number}, Installment {self.installment_number}"


def _category_key(category: Any) -> str:
    """Accept either a ReminderCategory member or its string value"""
    return getattr(category, "value", category)


def _esc(value: Any) -> str:
    return html.escape(str(value if value is not None else ""))

# ============================================================================
# SUBJECTS
# ============================================================================

_SUBJECTS = {
    SEVEN_DAYS_BEFORE: "Payment Reminder: {installment} due in 7 days",
    TWO_DAYS_BEFORE: "Payment Reminder: {installment} due in 2 days",
    ON_DUE_DATE: "Payment Due Today: {installment}",
    OVERDUE: "Overdue Payment: {installment} is {days_overdue} days overdue",
}


def get_email_subject(category: Any, context: Optional[ReminderEmailContext] = None) -> str:
    """Subject line for a reminder category"""
    key = _category_key(category)
    if key not in _SUBJECTS:
        raise ValueError(f"Unknown reminder category: {key}")
    if context is None:
        return _SUBJECTS[key].format(installment="Your installment", days_overdue="several")
    return _SUBJECTS[key].format(
        installment=context.installment_label,
        days_overdue=context.days_overdue,
    )

# ============================================================================
# BODIES
# ============================================================================

_ACCENTS = {
    SEVEN_DAYS_BEFORE: "#2563eb",
    TWO_DAYS_BEFORE: "#d97706",
    ON_DUE_DATE: "#ea580c",
    OVERDUE: "#dc2626",
}


def _lead_paragraph(key: str, ctx: ReminderEmailContext) -> str:
    installment = f"<strong>{_esc(ctx.installment_label)}</strong>"
    due = f"<strong>{_esc(ctx.formatted_due_date)}</strong>"
    if key == SEVEN_DAYS_BEFORE:
        return f"This is a friendly reminder that {installment} is due in 7 days, on {due}."
    if key == TWO_DAYS_BEFORE:
        return f"Your payment for {installment} is due in just 2 days, on {due}. Please make sure it is completed on time."
    if key == ON_DUE_DATE:
        return f"Your payment for {installment} is due <strong>today</strong> ({due})."
    return (
        f"Our records show that the payment for {installment}, due on {due}, "
        f"is now <strong>{ctx.days_overdue} days overdue</strong>. Please complete it as soon as possible."
    )


def get_email_content(context: ReminderEmailContext) -> str:
    """Render the HTML body for the context's reminder category"""
    key = _category_key(context.reminder_type)
    if key not in _ACCENTS:
        raise ValueError(f"Unknown reminder category: {key}")
    accent = _ACCENTS[key]

    support_html = ""
    if context.support_email:
        support_html = (
            f'<p style="color: #666; font-size: 14px;">Questions? Write to '
            f'<a href="mailto:{_esc(context.support_email)}">{_esc(context.support_email)}</a>.</p>'
        )

    return f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h2 style="color: {accent};">{_esc(get_email_subject(key, context))}</h2>
          <p>Hello {_esc(context.student_name)},</p>
          <p>{_lead_paragraph(key, context)}</p>
          <table border="1" cellpadding="6" cellspacing="0" style="border-collapse: collapse;">
            <tr><th align="left">Semester</th><td>{context.semester_number}</td></tr>
            <tr><th align="left">Installment</th><td>{context.installment_number}</td></tr>
            <tr><th align="left">Due date</th><td>{_esc(context.formatted_due_date)}</td></tr>
          </table>
          <p>If you have already paid, please ignore this message.</p>
          {support_html}
          <hr style="margin: 30px 0; border: none; border-top: 1px solid #eee;">
          <p style="color: #999; font-size: 12px;">{_esc(context.organization_name)}</p>
        </div>
        """

# ============================================================================
# TEST MODE AND PREVIEWS
# ============================================================================

def build_test_message(student_name: str, sent_at: datetime) -> Tuple[str, str]:
    """Connectivity-check subject and body for a single student"""
    text = f"This is a test automated reminder sent at {sent_at.strftime('%d %b %Y, %I:%M %p %Z').strip()}"
    content = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <p>Hello {_esc(student_name)},</p>
          <p>{_esc(text)}</p>
          <p style="color: #666; font-size: 14px;">No action is required.</p>
        </div>
        """
    return TEST_REMINDER_SUBJECT, content


# Day offsets used for each category when rendering previews
_PREVIEW_OFFSETS = {
    SEVEN_DAYS_BEFORE: (7, 0),
    TWO_DAYS_BEFORE: (2, 0),
    ON_DUE_DATE: (0, 0),
    OVERDUE: (-5, 5),
}


def preview_all_templates(today: date, organization_name: str = "LIT OS",
                          support_email: str = "") -> List[Dict[str, Any]]:
    """Render every reminder category against a sample installment."""
    previews = []
    for key, (days_remaining, days_overdue) in _PREVIEW_OFFSETS.items():
        context = ReminderEmailContext(
            student_name="Sample Student",
            student_email="student@example.com",
            payment_id="preview-payment",
            due_date=today + timedelta(days=days_remaining),
            installment_number=1,
            semester_number=1,
            days_remaining=days_remaining,
            days_overdue=days_overdue,
            reminder_type=key,
            organization_name=organization_name,
            support_email=support_email,
        )
        previews.append({
            'reminder_type': key,
            'subject': get_email_subject(key, context),
            'content': get_email_content(context),
            'days_remaining': days_remaining,
            'days_overdue': days_overdue,
            'success': True,
            'message': 'Template rendered',
        })
    return previews
