import logging
from datetime import datetime, timezone

import boto3
import pytest
from botocore.stub import Stubber

import aws_mfa_updater

LONG_TERM_ACCESS_KEY = "AKIAEXAMPLE000000001"
LONG_TERM_SECRET = "wJalrXUtnFEMI/K7MDENG/bPxRfiCYEXAMPLEKEY"
MFA_DEVICE = "arn:aws:iam::123456789012:mfa/user"

CREDENTIALS_WITH_STALE_DEFAULT = f"""[default]
aws_access_key_id = ASIAOLD
aws_secret_access_key = OLDSECRET
aws_session_token = OLDTOKEN
aws_security_token = OLDTOKEN
expiration = 2020-01-01 00:00:00

[default-long-term]
aws_access_key_id = {LONG_TERM_ACCESS_KEY}
aws_secret_access_key = {LONG_TERM_SECRET}
aws_mfa_device = {MFA_DEVICE}
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ("AWS_SHARED_CREDENTIALS_FILE", "AWS_SESSION_DURATION",
                 "AWS_MFA_UPDATER_OP_ACCOUNT", "AWS_MFA_UPDATER_OP_ITEM_NAME"):
        monkeypatch.delenv(name, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    log = logging.getLogger("aws_mfa_updater")
    for handler in list(log.handlers):
        log.removeHandler(handler)
    log.setLevel(logging.NOTSET)


@pytest.fixture
def credentials_path(tmp_path):
    path = tmp_path / "aws" / "credentials"
    path.parent.mkdir()
    path.write_text(CREDENTIALS_WITH_STALE_DEFAULT)
    return path


@pytest.fixture
def sts_client():
    return boto3.Session(
        aws_access_key_id=LONG_TERM_ACCESS_KEY,
        aws_secret_access_key=LONG_TERM_SECRET,
        region_name="us-east-1",
    ).client("sts", config=aws_mfa_updater.BOTO_CONFIG)


@pytest.fixture
def sts_stub(sts_client):
    with Stubber(sts_client) as stubber:
        yield stubber
        stubber.assert_no_pending_responses()


def session_token_response(access_key_id="ASIAEXAMPLE000000002", secret="SECRET2", token="TOKEN2"):
    return {
        "Credentials": {
            "AccessKeyId": access_key_id,
            "SecretAccessKey": secret,
            "SessionToken": token,
            "Expiration": datetime(2026, 10, 19, 10, 30, tzinfo=timezone.utc),
        }
    }


def make_session(access_key_id="ASIA2", secret="SECRET2", token="TOKEN2"):
    return aws_mfa_updater.SessionCredentials(
        access_key_id=access_key_id,
        secret_access_key=secret,
        session_token=token,
        expiration=datetime(2026, 10, 19, 10, 30, tzinfo=timezone.utc),
    )
