"""
Host environment lookups.

Each value is resolved through an explicit fallback chain ending in a named
default, so a lookup never fails outright.
"""

import logging
import os
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError

logger = logging.getLogger(__name__)

DEFAULT_REGION = 'us-west-2'
DEFAULT_INSTANCE_ID = 'local-dev'


def _session_region() -> Optional[str]:
    """Region from the boto3 configuration chain (~/.aws/config, profile)."""
    try:
        return boto3.session.Session().region_name
    except BotoCoreError as e:
        logger.debug(f"boto3 session region lookup failed: {e}")
        return None


def resolve_region(configured: Optional[str] = None) -> str:
    """
    Resolve the AWS region.

    Order: configured value, AWS_REGION, AWS_DEFAULT_REGION, boto3 session
    region, DEFAULT_REGION.
    """
    candidates = (
        ('configuration', lambda: configured),
        ('AWS_REGION', lambda: os.environ.get('AWS_REGION')),
        ('AWS_DEFAULT_REGION', lambda: os.environ.get('AWS_DEFAULT_REGION')),
        ('boto3 session', _session_region),
    )
    for source, lookup in candidates:
        value = lookup()
        if value:
            logger.debug(f"Region {value} resolved from {source}")
            return value

    logger.debug(f"No region configured, using default {DEFAULT_REGION}")
    return DEFAULT_REGION


def resolve_instance_id(configured: Optional[str] = None) -> str:
    """
    Resolve the identifier of the machine being backed up.

    Order: configured value, OPENCLAW_INSTANCE_ID, DEFAULT_INSTANCE_ID.
    """
    if configured:
        return configured

    from_env = os.environ.get('OPENCLAW_INSTANCE_ID')
    if from_env:
        return from_env

    return DEFAULT_INSTANCE_ID
