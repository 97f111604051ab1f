"""Shared fixtures for the aws_mfa_refresh tests"""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from aws_mfa_refresh import EXPIRATION_FORMAT, RefreshConfig

BASE_CREDENTIALS = """# Long-lived keys, do not share
[default-mfa]
aws_access_key_id = AKIABASEKEY
aws_secret_access_key = base/secret+key

[other]
aws_access_key_id=AKIAOTHERKEY
aws_secret_access_key=other-secret
region = us-east-1
"""


def expiration_in(hours: float) -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=hours)).strftime(EXPIRATION_FORMAT)


def session_section(expiration: str, profile: str = "default") -> str:
    return (
        f"\n[{profile}]\n"
        "aws_access_key_id = ASIAOLDKEY\n"
        "aws_secret_access_key = old-secret\n"
        "aws_session_token = old-token\n"
        f"expiration = {expiration}\n"
    )


def section_lines(text: str, name: str) -> list:
    """Raw lines of a section, header included, up to the next header."""
    lines = text.splitlines(keepends=True)
    block = []
    inside = False
    for line in lines:
        if line.startswith("["):
            inside = line.strip() == f"[{name}]"
        if inside:
            block.append(line)
    return block


@pytest.fixture
def write_credentials(tmp_path):
    def _write(text: str):
        path = tmp_path / "credentials"
        path.write_text(text)
        return path
    return _write


@pytest.fixture
def credentials_path(write_credentials):
    return write_credentials(BASE_CREDENTIALS)


@pytest.fixture
def config(credentials_path):
    return RefreshConfig(credentials_file=credentials_path)


@pytest.fixture
def sts_response():
    return {
        'Credentials': {
            'AccessKeyId': 'ASIANEWKEY',
            'SecretAccessKey': 'new-secret',
            'SessionToken': 'new-token',
            'Expiration': datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        }
    }


@pytest.fixture
def aws(sts_response):
    """Patch create_session and hand out mocked IAM, STS and S3 clients."""
    clients = {
        'iam': MagicMock(name='iam'),
        'sts': MagicMock(name='sts'),
        's3': MagicMock(name='s3'),
    }
    clients['iam'].list_mfa_devices.return_value = {
        'MFADevices': [{'SerialNumber': 'arn:aws:iam::123456789012:mfa/alice'}]
    }
    clients['sts'].get_session_token.return_value = sts_response

    session = MagicMock(name='session')
    session.client.side_effect = lambda name, **kwargs: clients[name]

    with patch('aws_mfa_refresh.create_session', return_value=session) as create_session:
        yield SimpleNamespace(create_session=create_session, session=session, **clients)
