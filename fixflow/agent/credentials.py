"""Credential resolution for one run.

Three independent lookups run concurrently, each in its own session:
- the user's GitHub access token
- the chosen provider key, decrypted
- the user's free fallback provider key, decrypted (if any)
"""

from __future__ import annotations

import asyncio
import logging

from sqlmodel import select

from fixflow.database.models import Account, APIKey
from fixflow.database.session import SessionMaker
from fixflow.errors import MissingCredentials
from fixflow.schemas import CredentialBundle, Provider
from fixflow.tools.encryption import KeyCipher, looks_like_provider_key


logger = logging.getLogger(__name__)


class CredentialResolver:
    """Assembles a ``CredentialBundle`` from the credential store."""

    def __init__(
        self,
        session_maker: SessionMaker,
        cipher: KeyCipher,
        fallback_provider: str = Provider.HUGGINGFACE.value,
    ) -> None:
        self._session_maker = session_maker
        self._cipher = cipher
        self.fallback_provider = fallback_provider

    async def resolve(self, user_id: str, credential_ref: str) -> CredentialBundle:
        """Resolve decrypted credentials.

        Raises:
            MissingCredentials: token or primary key is absent or invalid.
            DecryptionFailure: a stored key cannot be decrypted.
        """
        token, primary, fallback = await asyncio.gather(
            self._access_token(user_id),
            self._api_key(user_id, key_id=credential_ref),
            self._api_key(user_id, provider=self.fallback_provider),
        )

        if not token or primary is None:
            raise MissingCredentials("Missing credentials")

        fallback_key: str | None = None
        if fallback is not None and fallback.provider != primary.provider:
            fallback_key = self._decrypt(fallback)

        return CredentialBundle(
            source_control_token=token,
            primary_api_key=self._decrypt(primary),
            primary_provider=primary.provider,
            fallback_api_key=fallback_key,
        )

    async def _access_token(self, user_id: str) -> str | None:
        async with self._session_maker() as session:
            result = await session.execute(
                select(Account)
                .where(Account.user_id == user_id)
                .where(Account.provider == "github")
            )
            account = result.scalars().first()
        return account.access_token if account is not None else None

    async def _api_key(
        self,
        user_id: str,
        *,
        key_id: str | None = None,
        provider: str | None = None,
    ) -> APIKey | None:
        query = select(APIKey).where(APIKey.user_id == user_id).where(APIKey.is_valid == True)  # noqa: E712
        if key_id is not None:
            query = query.where(APIKey.id == key_id)
        if provider is not None:
            query = query.where(APIKey.provider == provider)
        async with self._session_maker() as session:
            result = await session.execute(query)
            return result.scalars().first()

    def _decrypt(self, key: APIKey) -> str:
        plaintext = self._cipher.decrypt(key.encrypted_key, key.iv, key.auth_tag)
        if not looks_like_provider_key(plaintext, key.provider):
            logger.warning(f"Decrypted {key.provider} key {key.id} does not match the expected format")
        return plaintext
