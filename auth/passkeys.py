"""
auth/passkeys.py -- WebAuthn ceremony engine (registration and authentication).

PasskeyService orchestrates the four ceremonies on top of py_webauthn:

  start_registration       -> options + challenge stored under uuid or user id
  finish_registration      -> verify attestation, persist credential
  start_authentication     -> email-based; allow-list of the user's credentials
  start_passwordless       -> no allow-list; challenge stored under the session uuid
  finish_authentication    -> verify assertion, advance counter, return owner id

Every operation returns a CeremonyResult instead of raising for expected
failures (unknown user, missing challenge, bad signature) so the route layer
can map outcomes to status codes deterministically. Store or network faults
are not expected failures and propagate.

Challenge binding: before running cryptographic verification, the challenge
echoed in clientDataJSON is compared with the stored one. A response that
answers a challenge which has since been overwritten (a second start for the
same key) is reported as "no challenge found", not as a signature failure --
from the caller's point of view its ceremony no longer exists.

Signature counter policy:
  The reported counter must be strictly greater than the stored counter.
  The one exception is an authenticator that never increments (stored and
  reported both 0), which is accepted -- many platform passkeys always
  report 0. Anything else that fails to advance is treated as a cloned
  authenticator or a replay and fails verification without touching storage.

Layer rule: no imports from api/ or audit/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url, parse_client_data_json
from webauthn.helpers.exceptions import WebAuthnException
from webauthn.helpers.structs import (
    AttestationConveyancePreference,
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from auth.models import PasskeyCredential
from auth.store import PasskeyStore, UserStore
from cache.store import ChallengeStore, Namespace

logger = logging.getLogger("realm.passkeys")

CHALLENGE_TTL_SECONDS = 300
OPTIONS_TIMEOUT_MS = 120_000


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    VERIFICATION_FAILED = "verification_failed"
    INVALID_REQUEST = "invalid_request"
    FORBIDDEN = "forbidden"


@dataclass
class CeremonyResult:
    success: bool
    error: str | None = None
    failure: FailureKind | None = None
    options: dict | None = None
    user_id: str | None = None
    credential: PasskeyCredential | None = None

    @classmethod
    def fail(cls, failure: FailureKind, error: str) -> CeremonyResult:
        return cls(success=False, error=error, failure=failure)


class PasskeyService:
    """Passkey ceremonies for one relying party.

    All collaborators are injected; the app lifespan builds one instance and
    tests build their own around in-memory stores.
    """

    def __init__(
        self,
        users: UserStore,
        passkeys: PasskeyStore,
        challenges: ChallengeStore,
        rp_id: str,
        rp_name: str,
        origin: str,
        challenge_ttl_seconds: int = CHALLENGE_TTL_SECONDS,
        timeout_ms: int = OPTIONS_TIMEOUT_MS,
    ) -> None:
        self.users = users
        self.passkeys = passkeys
        self.challenges = challenges
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.challenge_ttl_seconds = challenge_ttl_seconds
        self.timeout_ms = timeout_ms

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def start_registration(
        self,
        user_id: str,
        email: str,
        display_name: str,
        passkey_name: str | None = None,
        uuid: str | None = None,
    ) -> CeremonyResult:
        """Build creation options and remember the challenge.

        Existing credentials go into excludeCredentials so the browser refuses
        to register the same authenticator twice.
        """
        existing = self.passkeys.find_by_owner(user_id)
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user_id.encode("utf-8"),
            user_name=email,
            user_display_name=display_name,
            attestation=AttestationConveyancePreference.NONE,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[_descriptor(c) for c in existing],
            timeout=self.timeout_ms,
        )
        self.challenges.put(
            Namespace.REGISTRATION,
            uuid or user_id,
            bytes_to_base64url(options.challenge),
            ttl_seconds=self.challenge_ttl_seconds,
            auxiliary=passkey_name,
        )
        return CeremonyResult(success=True, options=json.loads(options_to_json(options)), user_id=user_id)

    def finish_registration(self, user_id: str, response: dict, uuid: str | None = None) -> CeremonyResult:
        """Verify an attestation response and persist the new credential.

        On verification failure the stored challenge is left in place, so the
        browser may retry until it expires.
        """
        key = uuid or user_id
        stored = self.challenges.get(Namespace.REGISTRATION, key)
        if stored is None or not _answers(response, stored.challenge):
            return CeremonyResult.fail(FailureKind.NOT_FOUND, "No registration challenge found")

        try:
            verification = verify_registration_response(
                credential=response,
                expected_challenge=base64url_to_bytes(stored.challenge),
                expected_origin=self.origin,
                expected_rp_id=self.rp_id,
            )
        except WebAuthnException as exc:
            logger.warning("Passkey registration verification failed for user %s: %s", user_id, exc)
            return CeremonyResult.fail(FailureKind.VERIFICATION_FAILED, "Passkey verification failed")

        transports = (response.get("response") or {}).get("transports") or []
        credential = self.passkeys.create(
            PasskeyCredential(
                id=bytes_to_base64url(verification.credential_id),
                owner_id=user_id,
                name=stored.auxiliary,
                public_key=verification.credential_public_key,
                counter=verification.sign_count,
                device_type=_enum_value(verification.credential_device_type),
                backed_up=bool(verification.credential_backed_up),
                transports=[str(t) for t in transports],
            )
        )
        self.challenges.delete(Namespace.REGISTRATION, key)
        logger.info("Passkey registered for user %s", user_id)
        return CeremonyResult(success=True, user_id=user_id, credential=credential)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def start_authentication(self, email: str | None, uuid: str | None = None) -> CeremonyResult:
        """Email-based login: options restricted to the user's credentials.

        uuid is accepted for symmetry with the other ceremonies but the
        challenge is always keyed by the resolved user id.
        """
        if not email:
            return CeremonyResult.fail(
                FailureKind.INVALID_REQUEST, "Email is required for email-based authentication"
            )
        user = self.users.get_by_email(email)
        if user is None:
            return CeremonyResult.fail(FailureKind.NOT_FOUND, "User not found")
        credentials = self.passkeys.find_by_owner(user.id)
        if not credentials:
            return CeremonyResult.fail(FailureKind.NOT_FOUND, "No passkeys found for this user")

        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            allow_credentials=[_descriptor(c) for c in credentials],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self.challenges.put(
            Namespace.AUTHENTICATION,
            user.id,
            bytes_to_base64url(options.challenge),
            ttl_seconds=self.challenge_ttl_seconds,
        )
        return CeremonyResult(success=True, options=json.loads(options_to_json(options)), user_id=user.id)

    def start_passwordless(self, uuid: str) -> CeremonyResult:
        """Discoverable-credential login: any passkey for this RP may answer."""
        if not uuid:
            return CeremonyResult.fail(FailureKind.INVALID_REQUEST, "Session uuid is required")
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self.timeout_ms,
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        self.challenges.put(
            Namespace.PASSWORDLESS,
            uuid,
            bytes_to_base64url(options.challenge),
            ttl_seconds=self.challenge_ttl_seconds,
        )
        return CeremonyResult(success=True, options=json.loads(options_to_json(options)))

    def finish_authentication(self, user_id: str, response: dict, uuid: str | None = None) -> CeremonyResult:
        """Verify an assertion and return the id of the credential's owner.

        An empty user_id selects the passwordless path, where the credential
        itself identifies who is logging in.
        """
        credential = self.passkeys.find_by_id(str(response.get("rawId") or response.get("id") or ""))
        if credential is None:
            return CeremonyResult.fail(FailureKind.NOT_FOUND, "Passkey not found")

        if user_id:
            namespace, key = Namespace.AUTHENTICATION, user_id
        else:
            namespace, key = Namespace.PASSWORDLESS, uuid or ""
        stored = self.challenges.get(namespace, key) if key else None
        if stored is None or not _answers(response, stored.challenge):
            return CeremonyResult.fail(FailureKind.NOT_FOUND, "No authentication challenge found")

        if user_id and credential.owner_id != user_id:
            logger.warning("Passkey %s presented for user %s but owned by %s", credential.id, user_id, credential.owner_id)
            return CeremonyResult.fail(FailureKind.VERIFICATION_FAILED, "Authentication failed")

        try:
            verification = verify_authentication_response(
                credential=response,
                expected_challenge=base64url_to_bytes(stored.challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=credential.public_key,
                credential_current_sign_count=credential.counter,
            )
        except WebAuthnException as exc:
            logger.warning("Passkey assertion rejected for credential %s: %s", credential.id, exc)
            return CeremonyResult.fail(FailureKind.VERIFICATION_FAILED, "Authentication failed")

        if not counter_advanced(credential.counter, verification.new_sign_count):
            logger.warning(
                "Signature counter did not advance for credential %s (stored=%d, reported=%d)",
                credential.id,
                credential.counter,
                verification.new_sign_count,
            )
            return CeremonyResult.fail(FailureKind.VERIFICATION_FAILED, "Authentication failed")

        self.passkeys.update_counter(credential.id, verification.new_sign_count)
        credential.counter = verification.new_sign_count
        self.challenges.delete(namespace, key)
        return CeremonyResult(success=True, user_id=credential.owner_id, credential=credential)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def list_passkeys(self, user_id: str) -> list[PasskeyCredential]:
        return self.passkeys.find_by_owner(user_id)

    def delete_passkey(self, user_id: str, credential_id: str) -> CeremonyResult:
        """Delete one of the caller's own credentials."""
        credential = self.passkeys.find_by_id(credential_id)
        if credential is None:
            return CeremonyResult.fail(FailureKind.NOT_FOUND, "Passkey not found")
        if credential.owner_id != user_id:
            return CeremonyResult.fail(FailureKind.FORBIDDEN, "Unauthorized")
        self.passkeys.delete(credential_id)
        return CeremonyResult(success=True, user_id=user_id, credential=credential)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def counter_advanced(stored: int, reported: int) -> bool:
    """True if a reported signature counter is acceptable after `stored`."""
    if stored == 0 and reported == 0:
        return True
    return reported > stored


def _answers(response: dict, expected_challenge: str) -> bool:
    """True if the response's clientDataJSON echoes the expected challenge.

    Malformed client data returns True so the verification step reports the
    real problem as a verification failure.
    """
    try:
        raw = (response.get("response") or {})["clientDataJSON"]
        client_data = parse_client_data_json(base64url_to_bytes(raw))
    except (KeyError, TypeError, ValueError, WebAuthnException):
        return True
    return bytes_to_base64url(client_data.challenge) == expected_challenge


def _descriptor(credential: PasskeyCredential) -> PublicKeyCredentialDescriptor:
    transports = []
    for t in credential.transports:
        try:
            transports.append(AuthenticatorTransport(t))
        except ValueError:
            logger.debug("Ignoring unknown transport %r on credential %s", t, credential.id)
    return PublicKeyCredentialDescriptor(id=base64url_to_bytes(credential.id), transports=transports or None)


def _enum_value(value: Any) -> str | None:
    if value is None:
        return None
    return value.value if isinstance(value, Enum) else str(value)
