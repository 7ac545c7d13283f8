"""
Matrix Authentication Handler

Handles login, session persistence and session restore for the bot's
AsyncClient. The session file holds the access token and device id so the
bot keeps the same device (and its encryption keys) across restarts.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

from nio import AsyncClient, LoginResponse, WhoamiResponse

from ...exceptions import AuthenticationError

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"


class MatrixAuthHandler:
    """Handles Matrix authentication and session file management."""

    def __init__(
        self,
        homeserver: str,
        user_id: str,
        password: Optional[str],
        state_dir: Path,
        device_name: str = "headjack_bot",
    ):
        self.homeserver = homeserver
        self.user_id = user_id
        self.password = password
        self.state_dir = Path(state_dir).expanduser()
        self.device_name = device_name
        self.session_file = self.state_dir / SESSION_FILE_NAME

    def load_session(self) -> Optional[Dict[str, Any]]:
        """Load the saved session if it exists and belongs to this user."""
        if not self.session_file.exists():
            logger.debug("MatrixAuthHandler: No session file found")
            return None

        try:
            with open(self.session_file, "r") as f:
                session = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"MatrixAuthHandler: Error loading session file: {e}")
            return None

        if not session.get("access_token") or not session.get("device_id"):
            logger.warning("MatrixAuthHandler: Session file is missing access_token or device_id")
            return None
        if session.get("user_id") != self.user_id:
            logger.warning(
                f"MatrixAuthHandler: Session file belongs to {session.get('user_id')}, ignoring"
            )
            return None

        logger.debug("MatrixAuthHandler: Loaded existing session")
        return session

    def save_session(self, access_token: str, device_id: str) -> None:
        """Save access token and device id with owner-only permissions."""
        session = {
            "access_token": access_token,
            "device_id": device_id,
            "user_id": self.user_id,
            "homeserver": self.homeserver,
            "saved_at": time.time(),
        }
        try:
            self.session_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.session_file, "w") as f:
                json.dump(session, f, indent=2)
            os.chmod(self.session_file, 0o600)
            logger.info("MatrixAuthHandler: Session saved")
        except OSError as e:
            logger.error(f"MatrixAuthHandler: Error saving session: {e}")

    def clear_session(self) -> None:
        """Remove the saved session, e.g. after the token was revoked."""
        if self.session_file.exists():
            try:
                self.session_file.unlink()
                logger.info("MatrixAuthHandler: Cleared session file")
            except OSError as e:
                logger.error(f"MatrixAuthHandler: Error clearing session file: {e}")

    async def verify_token_with_backoff(self, client: AsyncClient, max_retries: int = 3) -> bool:
        """Check that the restored token still belongs to this user."""
        for attempt in range(max_retries):
            try:
                response = await client.whoami()
            except Exception as e:
                delay = 2 ** attempt
                logger.warning(
                    f"MatrixAuthHandler: Token verification attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay}s..."
                )
                if attempt < max_retries - 1:
                    await asyncio.sleep(delay)
                    continue
                logger.error("MatrixAuthHandler: Token verification failed after all retries")
                return False

            if isinstance(response, WhoamiResponse) and response.user_id == self.user_id:
                logger.debug("MatrixAuthHandler: Token verification successful")
                return True
            logger.warning(f"MatrixAuthHandler: Token verification failed: {response}")
            return False

        return False

    async def login_with_retry(self, client: AsyncClient, max_attempts: int = 3) -> LoginResponse:
        """
        Log in with the password, waiting out rate limits.

        Raises:
            AuthenticationError: no password, wrong credentials or all attempts failed
        """
        if not self.password:
            raise AuthenticationError("No saved session and no password configured")

        last_error: Optional[str] = None
        for attempt in range(max_attempts):
            logger.info(f"MatrixAuthHandler: Login attempt {attempt + 1} for {self.user_id}")
            try:
                response = await client.login(self.password, device_name=self.device_name)
            except Exception as e:
                last_error = str(e)
                logger.error(f"MatrixAuthHandler: Login attempt {attempt + 1} failed: {e}")
                if attempt < max_attempts - 1:
                    await asyncio.sleep(min(60, 2 ** attempt * 5))
                continue

            if isinstance(response, LoginResponse):
                logger.info(f"MatrixAuthHandler: Login successful, device {response.device_id}")
                self.save_session(response.access_token, response.device_id)
                return response

            last_error = str(response)
            if getattr(response, "status_code", None) == "M_LIMIT_EXCEEDED":
                retry_after_ms = getattr(response, "retry_after_ms", None)
                delay = retry_after_ms / 1000.0 if retry_after_ms else min(60, 2 ** attempt * 5)
                logger.warning(
                    f"MatrixAuthHandler: Rate limited on attempt {attempt + 1}. "
                    f"Waiting {delay}s before retry..."
                )
                await asyncio.sleep(delay)
                continue

            raise AuthenticationError(f"Login failed: {response}")

        raise AuthenticationError(f"Login failed after {max_attempts} attempts: {last_error}")

    async def authenticate(self, client: AsyncClient) -> None:
        """
        Restore the saved session, or log in if there is none or it is stale.

        Raises:
            AuthenticationError: the bot could not obtain a usable session
        """
        session = self.load_session()
        if session is not None:
            client.restore_login(
                user_id=self.user_id,
                device_id=session["device_id"],
                access_token=session["access_token"],
            )
            if await self.verify_token_with_backoff(client):
                logger.info(f"MatrixAuthHandler: Restored session for device {session['device_id']}")
                return
            logger.warning("MatrixAuthHandler: Saved session is no longer valid, logging in again")
            self.clear_session()
            client.access_token = ""

        await self.login_with_retry(client)
