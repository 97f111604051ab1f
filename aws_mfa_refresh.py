#!/usr/bin/env python3
"""
AWS MFA Session Refresher
Refreshes temporary AWS credentials for a profile using IAM MFA and stores
them in the shared credentials file.

The long-lived keys live in the '<profile>-mfa' section, the temporary session
is written to '<profile>'.
"""

import abc
import argparse
import configparser
import logging
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import boto3
import botocore.session
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

__version__ = "1.0.0"

MFA_SUFFIX = "-mfa"
DEFAULT_PROFILE = "default"
DEFAULT_REGION = "eu-west-1"
EXPIRATION_FORMAT = "%Y-%m-%d %H:%M:%S"
MFA_TOKEN_LENGTH = 6  # Standard MFA token length
SESSION_KEYS = ('aws_access_key_id', 'aws_secret_access_key', 'aws_session_token', 'expiration')

# Custom User-Agent suffix for AWS API calls
BOTO_CONFIG = Config(user_agent_extra=f'aws-mfa-refresh/{__version__}')

SECTION_RE = re.compile(r'^\s*\[(?P<name>[^\]]+)\]')
OPTION_RE = re.compile(r'^\s*(?P<key>[^=:\s\[#;][^=:]*?)\s*[=:]')

# Global logger
logger = logging.getLogger("aws_mfa_refresh")
logger.addHandler(logging.NullHandler())


class MfaRefreshError(Exception):
    """Base error of the refresh workflow."""


class ExpirationFormatError(MfaRefreshError):
    def __init__(self, profile: str, value: str):
        self.profile = profile
        self.value = value
        super().__init__(
            f'Expiration ({value}) in profile "{profile}" is in the wrong format ({EXPIRATION_FORMAT})!'
        )


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None):
    """Configure logging to an optional daily file and to console in debug mode."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"aws_mfa_{datetime.now().strftime('%Y%m%d')}.log"
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(file_handler)
        logger.debug(f"Logging to {log_file}")

    # Console handler - only in debug mode
    if debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        logger.addHandler(console_handler)


class Colors:
    CYAN = '\033[96m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    YELLOW = '\033[93m'
    RED = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'


def print_banner():
    banner = f"""
{Colors.CYAN}{Colors.BOLD}
╔═══════════════════════════════════════════════════════════╗
║              AWS MFA Session Refresher                    ║
╚═══════════════════════════════════════════════════════════╝
{Colors.ENDC}"""
    print(banner)


def print_success(msg: str):
    print(f"{Colors.GREEN}✓ {msg}{Colors.ENDC}")
    logger.info(f"SUCCESS: {msg}")


def print_error(msg: str):
    print(f"{Colors.RED}✗ {msg}{Colors.ENDC}")
    logger.error(msg)


def print_warning(msg: str):
    print(f"{Colors.YELLOW}⚠ {msg}{Colors.ENDC}")
    logger.warning(msg)


def print_info(msg: str):
    print(f"{Colors.BLUE}ℹ {msg}{Colors.ENDC}")
    logger.info(msg)


@dataclass(frozen=True)
class RefreshConfig:
    """Everything a single refresh run needs, resolved from CLI and environment."""
    credentials_file: Path
    profile: str = DEFAULT_PROFILE
    region: str = DEFAULT_REGION
    validator: str = 'expiration'
    duration: Optional[int] = None
    force: bool = False

    @property
    def source_profile(self) -> str:
        return f"{self.profile}{MFA_SUFFIX}"


class CredentialsFile:
    """Shared credentials file that rewrites only the lines it changes.

    Lookups go through configparser; writes splice the raw lines so that other
    sections, comments and spacing come back exactly as they were read.
    """

    def __init__(self, path: Path, text: str = ''):
        self.path = Path(path)
        self._lines = text.splitlines(keepends=True)
        self._newline = '\r\n' if self._lines and self._lines[0].endswith('\r\n') else '\n'
        self._parser = self._parse(text)

    @classmethod
    def load(cls, path: Path) -> 'CredentialsFile':
        with open(path, newline='') as f:
            text = f.read()
        logger.debug(f"Loaded credentials from {path}")
        return cls(path, text)

    def _parse(self, text: str) -> configparser.ConfigParser:
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str
        parser.read_string(text.replace('\r\n', '\n'), source=str(self.path))
        return parser

    def text(self) -> str:
        return ''.join(self._lines)

    def sections(self) -> List[str]:
        return self._parser.sections()

    def has_section(self, section: str) -> bool:
        return self._parser.has_section(section)

    def get(self, section: str, key: str) -> Optional[str]:
        return self._parser.get(section, key, fallback=None)

    def _section_span(self, section: str) -> Optional[Tuple[int, int]]:
        start = None
        for i, line in enumerate(self._lines):
            match = SECTION_RE.match(line)
            if not match:
                continue
            if start is not None:
                return start, i
            if match.group('name') == section:
                start = i
        if start is None:
            return None
        return start, len(self._lines)

    def upsert_section(self, section: str, values: Dict[str, str]):
        """Set keys of a section in place, appending the section if it is missing."""
        pending = dict(values)
        nl = self._newline
        span = self._section_span(section)

        if span is None:
            if self._lines and not self._lines[-1].endswith('\n'):
                self._lines[-1] += nl
            if self._lines and self._lines[-1].strip():
                self._lines.append(nl)
            self._lines.append(f'[{section}]{nl}')
            self._lines.extend(f'{key} = {value}{nl}' for key, value in pending.items())
        else:
            start, end = span
            last_content = start
            for i in range(start + 1, end):
                line = self._lines[i]
                if line.strip():
                    last_content = i
                match = OPTION_RE.match(line)
                if match and match.group('key') in pending:
                    key = match.group('key')
                    self._lines[i] = f'{key} = {pending.pop(key)}{nl}'

            if pending:
                if not self._lines[last_content].endswith('\n'):
                    self._lines[last_content] += nl
                new_lines = [f'{key} = {value}{nl}' for key, value in pending.items()]
                self._lines[last_content + 1:last_content + 1] = new_lines

        self._parser = self._parse(self.text())

    def save(self):
        with open(self.path, 'w', newline='') as f:
            f.write(self.text())

        # Set restrictive permissions (600 - owner read/write only)
        try:
            os.chmod(self.path, 0o600)
        except OSError as e:
            logger.debug(f"Could not set permissions on {self.path}: {e}")

        logger.info(f"Saved credentials to {self.path}")


def create_session(config: RefreshConfig, profile: str) -> boto3.Session:
    """Build a boto3 session for a profile of the configured credentials file."""
    core = botocore.session.Session()
    core.set_config_variable('credentials_file', str(config.credentials_file))
    return boto3.Session(botocore_session=core, profile_name=profile, region_name=config.region)


def parse_expiration(profile: str, value: str) -> datetime:
    try:
        expiration = datetime.strptime(value.strip(), EXPIRATION_FORMAT)
    except ValueError:
        raise ExpirationFormatError(profile, value) from None
    return expiration.replace(tzinfo=timezone.utc)


class SessionValidator(abc.ABC):
    """Decides whether the cached session of a profile can still be used.

    check() returns (is_valid, expiration); expiration is None when unknown.
    """

    name = None

    @abc.abstractmethod
    def check(self, credentials: CredentialsFile, profile: str) -> Tuple[bool, Optional[datetime]]:
        """Return (is_valid, expiration) for the cached session of profile."""


class ExpirationValidator(SessionValidator):
    """Compares the stored expiration with the current time. No AWS calls."""

    name = 'expiration'

    def check(self, credentials, profile):
        logger.debug(f"Checking session validity for {profile}")
        value = credentials.get(profile, 'expiration') if credentials.has_section(profile) else None
        if value is None:
            logger.debug(f"No expiration found for {profile}")
            return False, None

        expiration = parse_expiration(profile, value)
        if expiration > datetime.now(timezone.utc):
            logger.debug(f"Session valid until {expiration}")
            return True, expiration
        logger.debug(f"Session expired at {expiration}")
        return False, expiration


class ProbeValidator(SessionValidator):
    """Issues a cheap authenticated call with the profile; any error means expired."""

    name = 'probe'

    def __init__(self, config: RefreshConfig):
        self.config = config

    def check(self, credentials, profile):
        if not credentials.has_section(profile):
            logger.debug(f"No section for {profile}, nothing to probe")
            return False, None

        try:
            s3 = create_session(self.config, profile).client('s3', config=BOTO_CONFIG)
            s3.list_buckets()
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"Probe call for {profile} failed: {e}")
            return False, None

        expiration = None
        value = credentials.get(profile, 'expiration')
        if value:
            try:
                expiration = parse_expiration(profile, value)
            except ExpirationFormatError as e:
                logger.debug(str(e))
        return True, expiration


VALIDATORS = {
    ExpirationValidator.name: lambda config: ExpirationValidator(),
    ProbeValidator.name: ProbeValidator,
}


def get_validator(config: RefreshConfig) -> SessionValidator:
    try:
        factory = VALIDATORS[config.validator]
    except KeyError:
        raise MfaRefreshError(f"Unknown session validator '{config.validator}'")
    return factory(config)


def list_mfa_devices(iam_client) -> List[str]:
    """Return the serial numbers of the MFA devices of the calling IAM user."""
    response = iam_client.list_mfa_devices()
    devices = [device['SerialNumber'] for device in response.get('MFADevices', [])]
    logger.debug(f"Found {len(devices)} MFA device(s)")
    return devices


def prompt_mfa_device(devices: List[str]) -> str:
    if len(devices) == 1:
        print_info(f"Using MFA device {devices[0]}")
        return devices[0]

    print(f"{Colors.BOLD}Choose a MFA device:{Colors.ENDC}")
    for index, serial in enumerate(devices, start=1):
        print(f"  {index}) {serial}")

    while True:
        choice = input(f"{Colors.YELLOW}Device [1-{len(devices)}]: {Colors.ENDC}").strip()
        if choice.isdigit() and 1 <= int(choice) <= len(devices):
            return devices[int(choice) - 1]
        print_error(f"Please enter a number between 1 and {len(devices)}")


def prompt_mfa_code(device: str) -> str:
    while True:
        code = input(f"{Colors.YELLOW}Enter the MFA code for {device}: {Colors.ENDC}").strip()

        if not code:
            print_error("MFA code is required")
            continue

        if not code.isdigit() or len(code) != MFA_TOKEN_LENGTH:
            print_error(f"MFA code must be {MFA_TOKEN_LENGTH} digits")
            continue

        return code


def get_session_token(sts_client, mfa_serial: str, mfa_code: str,
                      duration: Optional[int] = None) -> Optional[Dict]:
    """Get temporary session credentials using MFA."""
    logger.debug(f"Requesting session token for mfa_serial={mfa_serial}, duration={duration}")
    kwargs = {'SerialNumber': mfa_serial, 'TokenCode': mfa_code}
    if duration:
        kwargs['DurationSeconds'] = duration

    try:
        response = sts_client.get_session_token(**kwargs)
    except ClientError as e:
        error_code = e.response['Error']['Code']
        logger.debug(f"ClientError: {error_code} - {e}")
        print_error(f"An error occurred while retrieving session token for {mfa_serial}! Error: {e}")
        return None
    except BotoCoreError as e:
        print_error(f"An error occurred while retrieving session token for {mfa_serial}! Error: {e}")
        return None

    logger.debug(f"Session token obtained, expires: {response['Credentials']['Expiration']}")
    return response['Credentials']


def write_session(credentials: CredentialsFile, profile: str, credentials_data: Dict):
    """Store all four session keys of a profile in one update."""
    expiration_utc = credentials_data['Expiration'].astimezone(timezone.utc)
    values = (
        credentials_data['AccessKeyId'],
        credentials_data['SecretAccessKey'],
        credentials_data['SessionToken'],
        expiration_utc.strftime(EXPIRATION_FORMAT),
    )
    credentials.upsert_section(profile, dict(zip(SESSION_KEYS, values)))
    credentials.save()


def refresh_credentials(config: RefreshConfig) -> int:
    """Refresh the MFA session of config.profile. Returns the process exit code."""
    logger.info(f"Refreshing profile {config.profile} from {config.source_profile} "
                f"(validator={config.validator}, force={config.force})")

    if config.profile.endswith(MFA_SUFFIX):
        print_error(f'Profile "{config.profile}" already carries the "{MFA_SUFFIX}" suffix! '
                    f'Pass the profile you want to use, e.g. --profile {config.profile[:-len(MFA_SUFFIX)]}')
        return 0

    if not config.credentials_file.exists():
        print_error(f"AWS credentials file not found: {config.credentials_file}")
        return 1

    try:
        credentials = CredentialsFile.load(config.credentials_file)
    except (OSError, configparser.Error) as e:
        print_error(f"Could not read AWS credentials file {config.credentials_file}: {e}")
        return 1

    if not credentials.has_section(config.source_profile):
        print_error(f'AWS Profile not available! Please suffix the profile you want to use with "{MFA_SUFFIX}". '
                    f'e.g. [{config.profile}] -> [{config.source_profile}]')
        return 0

    if not config.force:
        try:
            validator = get_validator(config)
        except MfaRefreshError as e:
            print_error(str(e))
            return 1

        try:
            is_valid, expiration = validator.check(credentials, config.profile)
        except ExpirationFormatError as e:
            print_warning(f"{e} Requesting a new session.")
            is_valid, expiration = False, None

        if is_valid:
            if expiration:
                print_info(f"You're still authenticated! Your credentials will expire at "
                           f"{expiration.strftime(EXPIRATION_FORMAT)}.")
            else:
                print_info("You're still authenticated!")
            return 0

    try:
        session = create_session(config, config.source_profile)
        iam = session.client('iam', config=BOTO_CONFIG)
        sts = session.client('sts', config=BOTO_CONFIG)
    except BotoCoreError as e:
        print_error(f"Could not load AWS configuration for {config.source_profile}: {e}")
        return 1

    try:
        devices = list_mfa_devices(iam)
    except (ClientError, BotoCoreError) as e:
        print_error(f"An error occurred while listing MFA devices! Error: {e}")
        return 0

    if not devices:
        print_error("No MFA device found!")
        return 0

    try:
        device = prompt_mfa_device(devices)
        code = prompt_mfa_code(device)
    except KeyboardInterrupt:
        print("")
        print_info("Alright then, keep your secrets! Exiting..")
        return 0
    except EOFError:
        print("")
        print_error("No input available for the MFA prompt")
        return 1

    creds = get_session_token(sts, device, code, config.duration)
    if creds is None:
        return 0

    write_session(credentials, config.profile, creds)
    print_success(f"Authentication successful! (use profile: {config.profile})")
    print_info(f"Your credentials will expire at "
               f"{creds['Expiration'].astimezone(timezone.utc).strftime(EXPIRATION_FORMAT)}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='aws-mfa-refresh',
        description='Refresh temporary AWS credentials for a profile using IAM MFA',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Long-lived keys are read from the '<profile>-mfa' section of the credentials
file, the temporary session is written to '<profile>'.

Examples:
  %(prog)s                           Refresh the 'default' profile
  %(prog)s --profile prod            Refresh 'prod' using 'prod-mfa'
  %(prog)s --validator probe         Check the cached session with an AWS call
  %(prog)s --profile prod --force    Refresh even if the session is still valid
        """
    )

    parser.add_argument(
        '--config',
        type=Path,
        default=None,
        help='AWS credentials file location (default: ~/.aws/credentials)'
    )
    parser.add_argument(
        '-p', '--profile',
        default=DEFAULT_PROFILE,
        help='AWS Profile for which we need to request a MFA token (default: %(default)s)'
    )
    parser.add_argument(
        '-r', '--region',
        default=os.environ.get('AWS_MFA_REGION', DEFAULT_REGION),
        help='Region used for the IAM and STS calls (default: %(default)s)'
    )
    parser.add_argument(
        '--validator',
        choices=sorted(VALIDATORS),
        default=os.environ.get('AWS_MFA_VALIDATOR', 'expiration'),
        help='How to decide whether the cached session is still valid (default: %(default)s)'
    )
    parser.add_argument(
        '-d', '--duration',
        type=int,
        default=os.environ.get('AWS_MFA_DURATION'),
        help='Session duration in seconds (default: AWS default)'
    )
    parser.add_argument(
        '-f', '--force',
        action='store_true',
        help='Force re-authentication even if session is still valid'
    )
    parser.add_argument(
        '-q', '--quiet',
        action='store_true',
        help='Minimal output'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug mode with verbose logging'
    )
    parser.add_argument(
        '--log-dir',
        type=Path,
        default=os.environ.get('AWS_MFA_LOG_DIR'),
        help='Directory for a daily log file'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )
    return parser


def build_config(args: argparse.Namespace) -> RefreshConfig:
    """Turn parsed arguments into a RefreshConfig. Raises RuntimeError without a home directory."""
    credentials_file = args.config
    if credentials_file is None:
        credentials_file = Path.home() / ".aws" / "credentials"

    return RefreshConfig(
        credentials_file=credentials_file.expanduser(),
        profile=args.profile,
        region=args.region,
        validator=args.validator,
        duration=int(args.duration) if args.duration else None,
        force=args.force,
    )


def main(argv: Optional[List[str]] = None) -> int:
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    parser = build_parser()
    args = parser.parse_args(argv)

    log_dir = Path(args.log_dir).expanduser() if args.log_dir else None
    setup_logging(debug=args.debug, log_dir=log_dir)
    logger.info("AWS MFA refresh started")
    logger.debug(f"Arguments: {vars(args)}")

    if not args.quiet:
        print_banner()

    try:
        config = build_config(args)
    except RuntimeError as e:
        print_error(f"Could not determine the home directory: {e}")
        return 1

    return refresh_credentials(config)


if __name__ == '__main__':
    sys.exit(main())
