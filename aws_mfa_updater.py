#!/usr/bin/env python3
"""
AWS MFA Credentials Updater
Refreshes the [default] profile in ~/.aws/credentials with a temporary STS
session obtained from the permanent keys kept in [default-long-term].
MFA codes come from 1Password when configured, otherwise from the terminal.
"""

import argparse
import configparser
import logging
import os
import subprocess
import sys
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

__version__ = "0.1.1"

AWS_CREDENTIALS_FILE = Path.home() / ".aws" / "credentials"
DEFAULT_PROFILE = "default"
LONG_TERM_SUFFIX = "-long-term"
LONG_TERM_PROFILE = f"{DEFAULT_PROFILE}{LONG_TERM_SUFFIX}"
DEFAULT_SESSION_DURATION = 43200  # 12 hours
MIN_SESSION_DURATION = 900  # 15 minutes
MAX_SESSION_DURATION = 129600  # 36 hours
MFA_TOKEN_LENGTH = 6
OP_TIMEOUT = 30

LONG_TERM_KEYS = ("aws_access_key_id", "aws_secret_access_key", "aws_mfa_device")

# One attempt only: an MFA code is single use, so a retry can never succeed.
BOTO_CONFIG = Config(
    user_agent_extra=f"aws-mfa-updater/{__version__}",
    connect_timeout=10,
    read_timeout=30,
    retries={"total_max_attempts": 1},
)

logger = logging.getLogger("aws_mfa_updater")


class _SkipPrinted(logging.Filter):
    """Records already shown by print_* are not echoed to the console again."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not getattr(record, "printed", False)


def setup_logging(debug: bool = False) -> logging.Logger:
    """Configure console logging on stderr and return the application logger."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    console_handler.addFilter(_SkipPrinted())
    logger.addHandler(console_handler)

    # AWS lib gets very chatty, turn it down a bit
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("boto3").setLevel(logging.WARNING)

    logger.debug("Logging initialized")
    return logger


class Colors:
    GREEN = "\033[92m"
    RED = "\033[91m"
    ENDC = "\033[0m"


def _colorize(msg: str, color: str) -> str:
    if sys.stderr.isatty():
        return f"{color}{msg}{Colors.ENDC}"
    return msg


def print_success(msg: str, log: logging.Logger = logger):
    print(_colorize(f"✓ {msg}", Colors.GREEN), file=sys.stderr)
    log.info(f"SUCCESS: {msg}", extra={"printed": True})


def print_error(msg: str, log: logging.Logger = logger):
    print(_colorize(f"✗ {msg}", Colors.RED), file=sys.stderr)
    log.error(msg, extra={"printed": True})


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class MfaUpdaterError(Exception):
    """Base class for every failure that aborts a credentials refresh."""

    stage = "Update"


class TokenUnavailable(MfaUpdaterError):
    stage = "MFA token"


class ExchangeError(MfaUpdaterError):
    """STS refused or could not be reached. Never retried."""

    stage = "Session token exchange"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class StoreError(MfaUpdaterError):
    stage = "Credentials file"
    kind = "store"

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ParseError(StoreError):
    kind = "parse"


class MissingLongTermProfile(StoreError):
    kind = "missing_long_term_profile"


class IncompleteLongTermProfile(StoreError):
    kind = "incomplete_long_term_profile"

    def __init__(self, profile: str, missing: List[str]):
        super().__init__(f"Profile [{profile}] is missing: {', '.join(missing)}")
        self.profile = profile
        self.missing = missing


class WriteFailure(StoreError):
    kind = "write"


# ---------------------------------------------------------------------------
# Token provider
# ---------------------------------------------------------------------------


def _is_mfa_code(value: str) -> bool:
    return len(value) == MFA_TOKEN_LENGTH and value.isascii() and value.isdigit()


@dataclass(frozen=True)
class TokenLookup:
    """Outcome of an automated MFA lookup: either a code or the reason there is none."""

    code: Optional[str] = field(default=None, repr=False)
    reason: Optional[str] = None

    @classmethod
    def success(cls, code: str) -> "TokenLookup":
        return cls(code=code)

    @classmethod
    def unavailable(cls, reason: str) -> "TokenLookup":
        return cls(reason=reason)

    @property
    def ok(self) -> bool:
        return self.code is not None


def lookup_totp(account: str, item_name: str, log: logging.Logger = logger,
                runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                timeout: float = OP_TIMEOUT) -> TokenLookup:
    """Ask the 1Password CLI for the current TOTP of an item.

    Args:
        account: 1Password account shorthand, sign-in address or ID
        item_name: Name of the item holding the one-time password
        log: Logger for diagnostics
        runner: Callable with the signature of subprocess.run
        timeout: Seconds to wait for the op command

    Returns:
        TokenLookup.success with the 6-digit code, or TokenLookup.unavailable
        with a short reason. Failures are never raised.
    """
    cmd = ["op", "item", "get", "--account", account, item_name, "--otp"]
    log.debug(f"Running 1Password CLI for item '{item_name}' in account '{account}'")

    try:
        result = runner(cmd, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError:
        return TokenLookup.unavailable("op command not found")
    except subprocess.TimeoutExpired:
        return TokenLookup.unavailable(f"op timed out after {timeout}s")
    except (OSError, subprocess.SubprocessError) as e:
        return TokenLookup.unavailable(f"op could not be run: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        return TokenLookup.unavailable(f"op exited with status {result.returncode}: {stderr}")

    otp = (result.stdout or "").strip()
    if not _is_mfa_code(otp):
        return TokenLookup.unavailable("op returned something that is not a 6-digit code")

    return TokenLookup.success(otp)


def prompt_mfa_code(log: logging.Logger = logger,
                    input_fn: Optional[Callable[[str], str]] = None) -> str:
    """Read an MFA code from the operator, re-prompting until it looks valid.

    Raises TokenUnavailable when standard input is closed. KeyboardInterrupt
    is left to the caller.
    """
    read = input_fn or input
    while True:
        try:
            mfa_token = read("Enter AWS MFA code for device: ").strip()
        except (EOFError, OSError) as e:
            raise TokenUnavailable("Standard input closed before an MFA code was entered") from e

        if not mfa_token:
            print_error("MFA token is required", log=log)
            continue

        if not _is_mfa_code(mfa_token):
            print_error(f"MFA token must be {MFA_TOKEN_LENGTH} digits", log=log)
            continue

        log.debug("MFA token read from terminal")
        return mfa_token


def obtain_mfa_code(account: Optional[str], item_name: Optional[str],
                    log: logging.Logger = logger,
                    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                    input_fn: Optional[Callable[[str], str]] = None) -> str:
    """Get an MFA code from 1Password when configured, else from the terminal."""
    if account and item_name:
        lookup = lookup_totp(account, item_name, log=log, runner=runner)
        if lookup.ok:
            log.info("Retrieved MFA token from 1Password")
            return lookup.code
        log.warning(f"Failed to get token from 1Password ({lookup.reason}), falling back to manual input")

    return prompt_mfa_code(log=log, input_fn=input_fn)


# ---------------------------------------------------------------------------
# Session exchanger
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SessionCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)
    expiration: datetime

    @property
    def security_token(self) -> str:
        # Older SDKs read aws_security_token; always mirror the session token.
        return self.session_token

    def as_profile(self) -> Dict[str, str]:
        return {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "aws_session_token": self.session_token,
            "aws_security_token": self.security_token,
        }

    def expiration_display(self) -> str:
        return self.expiration.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def create_sts_client(access_key_id: str, secret_access_key: str):
    """STS client for the given long-term keys; region comes from boto3's usual chain."""
    session = boto3.Session(
        aws_access_key_id=access_key_id,
        aws_secret_access_key=secret_access_key,
    )
    return session.client("sts", config=BOTO_CONFIG)


def exchange(access_key_id: str, secret_access_key: str, mfa_device_arn: str,
             mfa_code: str, duration_seconds: int = DEFAULT_SESSION_DURATION,
             log: logging.Logger = logger, client=None) -> SessionCredentials:
    """Exchange long-term keys and an MFA code for temporary credentials.

    Args:
        access_key_id: Long-term access key ID (AKIA...)
        secret_access_key: Long-term secret access key
        mfa_device_arn: Serial number of the MFA device (arn:aws:iam::ACCOUNT:mfa/USER)
        mfa_code: Current code from the device
        duration_seconds: Session lifetime, 900 to 129600
        log: Logger for diagnostics
        client: Optional pre-built STS client

    Returns:
        The new SessionCredentials.

    Raises:
        ExchangeError: duration out of range, or STS failed. Exactly one call
            is made, there is no retry.
    """
    if not MIN_SESSION_DURATION <= duration_seconds <= MAX_SESSION_DURATION:
        raise ExchangeError(
            f"validation: duration {duration_seconds}s must be between "
            f"{MIN_SESSION_DURATION} and {MAX_SESSION_DURATION} seconds"
        )

    log.info(f"Fetching credentials - Duration: {duration_seconds}s")
    log.debug(f"Requesting session token with mfa_serial={mfa_device_arn}")

    try:
        if client is None:
            client = create_sts_client(access_key_id, secret_access_key)
        response = client.get_session_token(
            DurationSeconds=duration_seconds,
            SerialNumber=mfa_device_arn,
            TokenCode=mfa_code,
        )
    except ClientError as e:
        error = e.response.get("Error", {})
        raise ExchangeError(f"{error.get('Code', 'Unknown')}: {error.get('Message', str(e))}") from e
    except BotoCoreError as e:
        raise ExchangeError(str(e)) from e

    creds = response.get("Credentials")
    if not creds:
        raise ExchangeError("No credentials returned")

    session = SessionCredentials(
        access_key_id=creds["AccessKeyId"],
        secret_access_key=creds["SecretAccessKey"],
        session_token=creds["SessionToken"],
        expiration=creds["Expiration"],
    )
    log.debug(f"Session token obtained, access key {session.access_key_id}, expires {session.expiration}")
    return session


# ---------------------------------------------------------------------------
# Credentials store rewriter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LongTermCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    mfa_device: str


class CredentialsFile:
    """The shared credentials file, read once and written back whole.

    Only replaced profiles are re-rendered. Every other line, comments and
    spacing included, is written back exactly as it was read.
    """

    COMMENT_PREFIXES = ("#", ";")

    def __init__(self, path: Path, text: str = ""):
        self.path = Path(path)
        self.text = text
        self.config = self._new_parser()
        self._replaced: Dict[str, Dict[str, str]] = {}

    @staticmethod
    def _new_parser() -> configparser.ConfigParser:
        # Secrets may contain '%' and key case must survive a rewrite.
        config = configparser.ConfigParser(interpolation=None)
        config.optionxform = str
        return config

    @classmethod
    def load(cls, path: Path, log: logging.Logger = logger) -> "CredentialsFile":
        """Parse the credentials file. A missing file is an empty store."""
        path = Path(path).expanduser()

        if not path.exists():
            log.debug(f"Credentials file not found: {path}")
            return cls(path)

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot read {path}: {e}", kind="read") from e
        except UnicodeDecodeError as e:
            raise ParseError(f"Cannot parse {path}: not valid UTF-8 ({e})") from e

        store = cls(path, text)
        try:
            store.config.read_string(text, source=str(path))
        except configparser.Error as e:
            raise ParseError(f"Cannot parse {path}: {e}") from e

        log.debug(f"Loaded credentials from {path} with profiles {store.profiles()}")
        return store

    def profiles(self) -> List[str]:
        return self.config.sections()

    def profile(self, name: str) -> Dict[str, str]:
        return dict(self.config.items(name, raw=True))

    def long_term_credentials(self, name: str = LONG_TERM_PROFILE) -> LongTermCredentials:
        if not self.config.has_section(name):
            raise MissingLongTermProfile(f"Profile [{name}] not found in {self.path}")

        section = self.config[name]
        missing = [key for key in LONG_TERM_KEYS if not section.get(key, fallback="").strip()]
        if missing:
            raise IncompleteLongTermProfile(name, missing)

        return LongTermCredentials(
            access_key_id=section["aws_access_key_id"].strip(),
            secret_access_key=section["aws_secret_access_key"].strip(),
            mfa_device=section["aws_mfa_device"].strip(),
        )

    def replace_profile(self, name: str, values: Dict[str, str]):
        """Replace every key of a profile, keeping its position in the file."""
        if self.config.has_section(name):
            for option in list(self.config.options(name)):
                self.config.remove_option(name, option)
        else:
            self.config.add_section(name)

        for key, value in values.items():
            self.config.set(name, key, value)
        self._replaced[name] = dict(values)

    def _render_profile(self, name: str) -> str:
        lines = [f"[{name}]\n"]
        lines.extend(f"{key} = {value}\n" for key, value in self._replaced[name].items())
        lines.append("\n")
        return "".join(lines)

    def render(self) -> str:
        out = []
        emitted = set()
        current = None

        for line in self.text.splitlines(keepends=True):
            header = None if line[:1].isspace() else self.config.SECTCRE.match(line.strip())
            if header:
                current = header.group("header")
                if current in self._replaced:
                    out.append(self._render_profile(current))
                    emitted.add(current)
                    continue

            if current in self._replaced:
                # Old keys and blank lines go, comments stay.
                if line.strip().startswith(self.COMMENT_PREFIXES):
                    out.append(line)
                continue

            out.append(line)

        content = "".join(out)
        for name in self._replaced:
            if name in emitted:
                continue
            if content and not content.endswith("\n"):
                content += "\n"
            if content and not content.endswith("\n\n"):
                content += "\n"
            content += self._render_profile(name)

        return content

    def save(self, log: logging.Logger = logger):
        """Atomically replace the file: temp file in the same directory, then rename."""
        content = self.render()
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".credentials.", suffix=".tmp")
        except OSError as e:
            raise WriteFailure(f"Cannot write {self.path}: {e}") from e

        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            # Owner read/write only (600)
            os.chmod(temp_path, 0o600)
            os.replace(temp_path, self.path)
        except OSError as e:
            Path(temp_path).unlink(missing_ok=True)
            raise WriteFailure(f"Cannot write {self.path}: {e}") from e
        except BaseException:
            Path(temp_path).unlink(missing_ok=True)
            raise

        log.debug(f"Saved credentials to {self.path}")

    def write_session(self, name: str, session: SessionCredentials, log: logging.Logger = logger):
        """Put the session into a profile and write the file once."""
        self.replace_profile(name, session.as_profile())
        self.save(log=log)


def refresh(path: Path, long_term_profile_name: str, default_profile_name: str,
            session: SessionCredentials, log: logging.Logger = logger):
    """Rewrite the credentials file so the default profile holds the given session.

    The long-term profile must exist with its three keys; otherwise the file
    is left untouched.
    """
    store = CredentialsFile.load(path, log=log)
    store.long_term_credentials(long_term_profile_name)
    store.write_session(default_profile_name, session, log=log)


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aws-mfa-updater",
        description="Refresh AWS session credentials using MFA. Reads long-term credentials "
                    f"from [{LONG_TERM_PROFILE}] and writes temporary credentials to [{DEFAULT_PROFILE}].",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  Prompt for the MFA code, 12-hour session
  %(prog)s --duration 3600                  1-hour session
  %(prog)s --op-account work --op-item-name aws   Read the code from 1Password
        """
    )
    parser.add_argument(
        "-c", "--credentials-path",
        type=Path,
        default=os.environ.get("AWS_SHARED_CREDENTIALS_FILE") or AWS_CREDENTIALS_FILE,
        help="Path to AWS credentials file (env: AWS_SHARED_CREDENTIALS_FILE, default: ~/.aws/credentials)"
    )
    parser.add_argument(
        "-d", "--duration",
        type=int,
        default=os.environ.get("AWS_SESSION_DURATION") or DEFAULT_SESSION_DURATION,
        help=f"Session duration in seconds, {MIN_SESSION_DURATION}-{MAX_SESSION_DURATION} "
             f"(env: AWS_SESSION_DURATION, default: {DEFAULT_SESSION_DURATION})"
    )
    parser.add_argument(
        "--op-account",
        default=os.environ.get("AWS_MFA_UPDATER_OP_ACCOUNT"),
        help="1Password account for automatic MFA token retrieval (env: AWS_MFA_UPDATER_OP_ACCOUNT)"
    )
    parser.add_argument(
        "--op-item-name",
        default=os.environ.get("AWS_MFA_UPDATER_OP_ITEM_NAME"),
        help="1Password item name containing the TOTP (env: AWS_MFA_UPDATER_OP_ITEM_NAME)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging"
    )
    parser.add_argument(
        "-V", "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )
    return parser


def update_credentials(credentials_path: Path, duration: int,
                       op_account: Optional[str] = None, op_item_name: Optional[str] = None,
                       log: logging.Logger = logger,
                       runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                       input_fn: Optional[Callable[[str], str]] = None,
                       client=None) -> SessionCredentials:
    """Run one refresh: read the store, get a code, exchange it, write the store."""
    store = CredentialsFile.load(credentials_path, log=log)
    long_term = store.long_term_credentials(LONG_TERM_PROFILE)

    mfa_code = obtain_mfa_code(op_account, op_item_name, log=log, runner=runner, input_fn=input_fn)

    session = exchange(
        long_term.access_key_id,
        long_term.secret_access_key,
        long_term.mfa_device,
        mfa_code,
        duration,
        log=log,
        client=client,
    )

    store.write_session(DEFAULT_PROFILE, session, log=log)
    log.info(f"Success! Credentials expire at: {session.expiration_display()}")
    return session


def main(argv: Optional[Sequence[str]] = None) -> int:
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    parser = build_parser()
    args = parser.parse_args(argv)

    log = setup_logging(debug=args.debug)
    log.debug(f"Arguments: {vars(args)}")

    try:
        session = update_credentials(
            args.credentials_path,
            args.duration,
            op_account=args.op_account,
            op_item_name=args.op_item_name,
            log=log,
        )
    except KeyboardInterrupt:
        print("", file=sys.stderr)
        print_error("Cancelled, credentials file not modified", log=log)
        return 130
    except MfaUpdaterError as e:
        print_error(f"{e.stage} failed: {e}", log=log)
        log.debug(f"{type(e).__name__} during {e.stage}", exc_info=True)
        return 1

    print_success(f"Updated [{DEFAULT_PROFILE}] in {args.credentials_path}, "
                  f"expires at {session.expiration_display()}", log=log)
    return 0


if __name__ == "__main__":
    sys.exit(main())
