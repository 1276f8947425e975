#!/usr/bin/env python3
"""
Configuration Loader Module

This module provides secret and environment lookups for the payment reminder
system and builds the Supabase client shared by the record store and the
e-mail dispatcher.
"""

import os
from pathlib import Path
from typing import Optional, Tuple

from supabase import Client, create_client

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "reminder_config.yaml"

DRY_RUN_ENV = "PAYMENT_REMINDER_DRY_RUN"
TRUTHY_VALUES = {"1", "true", "yes", "on"}

# Checked in order, the service role key must win so RLS does not hide rows
SUPABASE_KEY_NAMES = (
    "SUPABASE_SERVICE_ROLE_KEY",
    "SUPABASE_SERVICE_ROLE",
    "SUPABASE_KEY",
    "SUPABASE_ANON_KEY",
)


def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """Environment variable lookup, blank values count as missing"""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def is_dry_run() -> bool:
    return str(get_secret(DRY_RUN_ENV, "0")).lower() in TRUTHY_VALUES


def get_supabase_credentials() -> Tuple[str, str]:
    """
    Returns the Supabase project URL and the most privileged key available.

    Raises:
        RuntimeError: if the URL or every key variable is missing
    """
    url = get_secret("SUPABASE_URL")
    key = None
    for name in SUPABASE_KEY_NAMES:
        key = get_secret(name)
        if key:
            break

    if not url or not key:
        raise RuntimeError(
            "Missing Supabase credentials: set SUPABASE_URL and one of "
            + " / ".join(SUPABASE_KEY_NAMES) + "."
        )
    return url, key


def create_supabase_client() -> Client:
    url, key = get_supabase_credentials()
    return create_client(url, key)
