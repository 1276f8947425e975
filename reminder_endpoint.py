#!/usr/bin/env python3
"""
Payment Reminder Trigger

Request handling for the externally triggered reminder run: CORS preflight,
routing on the test flags, and the error envelope. It is independent of any
web framework; a host server passes the method and decoded JSON body in and
writes the returned TriggerResponse out.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from email_templates import preview_all_templates
from reminder_scheduler import PaymentReminderScheduler, ReminderConfig

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Headers': 'authorization, x-client-info, apikey, content-type',
}
JSON_HEADERS = {**CORS_HEADERS, 'Content-Type': 'application/json'}


@dataclass
class TriggerResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None


def parse_body(body: Union[None, str, bytes, Dict[str, Any]]) -> Dict[str, Any]:
    """Decode the request body; an empty body means a production run"""
    if body is None:
        return {}
    if isinstance(body, dict):
        return body
    if isinstance(body, bytes):
        body = body.decode('utf-8')
    if not body.strip():
        return {}
    decoded = json.loads(body)
    if not isinstance(decoded, dict):
        raise ValueError("Request body must be a JSON object")
    return decoded


async def run_trigger(payload: Dict[str, Any], scheduler: Optional[PaymentReminderScheduler] = None,
                      config: Optional[ReminderConfig] = None,
                      today: Optional[date] = None) -> Dict[str, Any]:
    """Dispatch on the flags: test_all_emails wins, then test_mode, else production"""
    config = config or (scheduler.config if scheduler else ReminderConfig())

    if payload.get('test_all_emails'):
        logger.info("Rendering previews of every reminder template...")
        preview_date = today or datetime.now(config.zone()).date()
        results = preview_all_templates(
            preview_date,
            organization_name=config.dispatch.organization_name,
            support_email=config.dispatch.support_email,
        )
        return {
            'success': True,
            'message': f"Rendered {len(results)} reminder templates",
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'results': results,
        }

    scheduler = scheduler or PaymentReminderScheduler.from_config(config)

    if payload.get('test_mode'):
        response = await scheduler.run_test_reminders()
    else:
        response = await scheduler.run_payment_reminders(today)
    return response.to_dict()


async def handle_request(method: str, body: Union[None, str, bytes, Dict[str, Any]] = None,
                         scheduler: Optional[PaymentReminderScheduler] = None,
                         config: Optional[ReminderConfig] = None,
                         today: Optional[date] = None) -> TriggerResponse:
    """Handle one trigger request and always return a response"""
    if method.upper() == 'OPTIONS':
        return TriggerResponse(status=200, headers=dict(CORS_HEADERS), body='ok')

    try:
        payload = parse_body(body)
        result = await run_trigger(payload, scheduler=scheduler, config=config, today=today)
        return TriggerResponse(status=200, headers=dict(JSON_HEADERS), body=result)
    except Exception as e:
        logger.error(f"Error in automated payment reminders: {e}", exc_info=True)
        return TriggerResponse(
            status=500,
            headers=dict(JSON_HEADERS),
            body={
                'success': False,
                'error': str(e),
                'timestamp': datetime.now(timezone.utc).isoformat(),
            },
        )
