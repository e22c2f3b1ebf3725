"""AWS utility functions."""
from typing import List, Optional

import boto3
from botocore.exceptions import BotoCoreError
from loguru import logger

LOGS_SERVICE = 'logs'


class SessionError(Exception):
    """The credential profile could not be turned into a session."""


def create_session(profile: Optional[str] = None) -> boto3.session.Session:
    """Create a boto3 session for a credential profile.

    Args:
        profile: Named profile from the AWS config, or None for the default chain

    Returns:
        boto3 Session

    Raises:
        SessionError: If the profile is unknown or the config is broken
    """
    try:
        session = boto3.session.Session(profile_name=profile)
    except BotoCoreError as e:
        raise SessionError(f"can not create session: {e}") from e

    logger.debug(f"Created AWS session for profile {profile or 'default'}")
    return session


def supported_regions(
    session: boto3.session.Session,
    partition: str = 'aws'
) -> List[str]:
    """List every region where CloudWatch Logs is available.

    Args:
        session: Session whose bundled endpoint data is consulted
        partition: AWS partition name

    Returns:
        Sorted region names
    """
    regions = sorted(session.get_available_regions(LOGS_SERVICE, partition_name=partition))
    logger.info(f"Found {len(regions)} regions for {LOGS_SERVICE} in partition {partition}")
    return regions


def parse_region_list(value: Optional[str]) -> List[str]:
    """Split a comma separated region list, ignoring blanks."""
    if not value:
        return []
    return [region.strip() for region in value.split(',') if region.strip()]
