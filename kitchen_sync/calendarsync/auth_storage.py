"""
Builds the calendarsync auth storage bundle.

OAuth tokens are stored encrypted at rest (see kitchen_sync.encryption). The
calendarsync CLI expects them in its own YAML storage file, encrypted with
`age` using a passphrase. This module decrypts the stored tokens, renders that
YAML in memory and hands it to `age`:

- the plaintext is passed through an inherited pipe (`/dev/fd/N`), never a file
- the passphrase goes through stdin, never argv or the environment
- the armored ciphertext is read back from stdout

The resulting envelope is persisted on the account and reused by every run
until it is regenerated.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

import yaml
from sqlalchemy.orm import Session

from kitchen_sync.config import config
from kitchen_sync.database import utcnow
from kitchen_sync.encryption import decrypt_token
from kitchen_sync.errors import ConfigurationError
from kitchen_sync.models.accounts import Account

logger = logging.getLogger(__name__)


class AuthStorageError(ConfigurationError):
    code = "AUTH_STORAGE_ERROR"


class AccountNotFoundError(AuthStorageError):
    code = "ACCOUNT_NOT_FOUND"


class MissingRefreshTokenError(AuthStorageError):
    code = "MISSING_REFRESH_TOKEN"

    def __init__(self, account_id: str):
        super().__init__(
            f"Account {account_id} doesn't have a refresh token. Please re-link the Google account."
        )
        self.account_id = account_id


class MissingEncryptionKeyError(AuthStorageError):
    code = "MISSING_ENCRYPTION_KEY"

    def __init__(self):
        super().__init__(
            "Missing CALENDARSYNC_ENCRYPTION_KEY environment variable. "
            "This key is required to encrypt auth storage for the CalendarSync CLI."
        )


class EncryptionToolNotFoundError(AuthStorageError):
    code = "AGE_NOT_FOUND"

    def __init__(self, binary_path: str):
        super().__init__(
            f"The 'age' encryption tool was not found at '{binary_path}'. "
            "Install it (https://github.com/FiloSottile/age) or set AGE_BINARY."
        )
        self.binary_path = binary_path


class EncryptionToolError(AuthStorageError):
    code = "AGE_FAILED"

    def __init__(self, exit_code: Optional[int], stderr: str):
        super().__init__(f"age encryption failed with code {exit_code}: {stderr.strip()}")
        self.exit_code = exit_code
        self.stderr = stderr


@dataclass
class AccountTokens:
    calendar_id: str
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_at: Optional[int] = None  # Unix seconds


def build_account_tokens(
    account: Account,
    decrypt: Callable[[str], str] = decrypt_token,
) -> List[AccountTokens]:
    """One record per known calendar of the account, or one keyed by the account itself."""
    if not account.refresh_token:
        raise MissingRefreshTokenError(account.id)

    refresh_token = decrypt(account.refresh_token)
    access_token = decrypt(account.access_token) if account.access_token else ""
    token_type = account.token_type or "Bearer"

    calendar_ids = [calendar.external_id for calendar in account.calendars]
    if not calendar_ids:
        calendar_ids = [account.email or account.provider_account_id]

    return [
        AccountTokens(
            calendar_id=calendar_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_type=token_type,
            expires_at=account.expires_at,
        )
        for calendar_id in calendar_ids
    ]


def _format_expiry(expires_at: int) -> str:
    moment = datetime.fromtimestamp(expires_at, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


def render_auth_storage(tokens: List[AccountTokens]) -> str:
    calendars = []
    for token in tokens:
        entry = {
            "CalendarID": token.calendar_id,
            "access_token": token.access_token,
            "refresh_token": token.refresh_token,
            "token_type": token.token_type,
        }
        if token.expires_at:
            entry["expiry"] = _format_expiry(token.expires_at)
        calendars.append(entry)

    return yaml.safe_dump({"Calendars": calendars}, sort_keys=False, default_flow_style=False, width=10_000)


def _feed_pipe(fd: int, data: bytes) -> None:
    try:
        with os.fdopen(fd, "wb") as pipe:
            pipe.write(data)
    except BrokenPipeError:
        # age exited before reading everything; its exit status reports why
        logger.debug("age closed its input early")


async def encrypt_with_age(content: str, passphrase: str, age_binary: Optional[str] = None) -> str:
    """Encrypts `content` with `age --passphrase` and returns the armored envelope."""
    age_binary = age_binary or config.AGE_BINARY
    read_fd, write_fd = os.pipe()
    write_fd_owned = True

    try:
        try:
            process = await asyncio.create_subprocess_exec(
                age_binary,
                "--encrypt",
                "--passphrase",
                "--armor",
                f"/dev/fd/{read_fd}",
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                pass_fds=(read_fd,),
            )
        except (FileNotFoundError, PermissionError) as e:
            raise EncryptionToolNotFoundError(age_binary) from e
        finally:
            os.close(read_fd)

        loop = asyncio.get_running_loop()
        feeding = loop.run_in_executor(None, _feed_pipe, write_fd, content.encode("utf-8"))
        write_fd_owned = False

        # age asks for the passphrase twice (entry + confirmation)
        secret = f"{passphrase}\n{passphrase}\n".encode("utf-8")
        stdout, stderr = await process.communicate(input=secret)
        await feeding
    finally:
        if write_fd_owned:
            os.close(write_fd)

    if process.returncode != 0:
        raise EncryptionToolError(process.returncode, stderr.decode("utf-8", errors="replace"))

    return stdout.decode("utf-8")


async def create_auth_storage(
    tokens: List[AccountTokens],
    passphrase: Optional[str] = None,
    age_binary: Optional[str] = None,
) -> str:
    passphrase = passphrase if passphrase is not None else config.CALENDARSYNC_ENCRYPTION_KEY
    if not passphrase:
        raise MissingEncryptionKeyError()

    return await encrypt_with_age(render_auth_storage(tokens), passphrase, age_binary)


async def setup_account_auth_storage(
    db: Session,
    account_id: str,
    user_id: Optional[str] = None,
    passphrase: Optional[str] = None,
    age_binary: Optional[str] = None,
    decrypt: Callable[[str], str] = decrypt_token,
) -> int:
    """
    Generates the auth storage envelope for an account and stores it.

    Returns the number of calendar records in the bundle.
    """
    query = db.query(Account).filter(Account.id == account_id)
    if user_id is not None:
        query = query.filter(Account.user_id == user_id)
    account = query.first()
    if not account:
        raise AccountNotFoundError(f"Account {account_id} not found")

    tokens = build_account_tokens(account, decrypt=decrypt)
    envelope = await create_auth_storage(tokens, passphrase=passphrase, age_binary=age_binary)

    account.auth_storage = envelope
    account.auth_storage_updated_at = utcnow()
    db.commit()

    logger.info(f"Auth storage regenerated for account {account_id} ({len(tokens)} calendar(s))")
    return len(tokens)


def write_auth_storage_file(path: str, encrypted_content: str) -> None:
    """Writes the (already encrypted) envelope for a single run, readable by the owner only."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(encrypted_content)


async def is_age_available(age_binary: Optional[str] = None) -> bool:
    age_binary = age_binary or config.AGE_BINARY
    try:
        process = await asyncio.create_subprocess_exec(
            age_binary,
            "--version",
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except (FileNotFoundError, PermissionError):
        return False
    return await process.wait() == 0
