"""Binary field decoding for WebAuthn payloads (base64url without padding)."""

import json
import uuid
from typing import Any, Dict, Optional, Union

from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.structs import (
    AuthenticationCredential,
    AuthenticatorAssertionResponse,
    AuthenticatorAttestationResponse,
    AuthenticatorTransport,
    PublicKeyCredentialType,
    RegistrationCredential,
)


class PayloadDecodeError(ValueError):
    """A client payload field is missing or not valid base64url."""


def decode_field(container: Dict[str, Any], name: str) -> bytes:
    value = container.get(name)
    if not isinstance(value, str) or not value:
        raise PayloadDecodeError(f"missing field '{name}'")
    try:
        return base64url_to_bytes(value)
    except (ValueError, TypeError) as e:
        raise PayloadDecodeError(f"field '{name}' is not base64url") from e


def canonical_credential_id(payload: Dict[str, Any]) -> str:
    """Re-encode the asserted rawId so lookups do not depend on client padding."""
    return bytes_to_base64url(decode_field(payload, "rawId"))


def client_data_challenge(client_data_json: bytes) -> bytes:
    """Return the challenge bytes embedded in clientDataJSON."""
    try:
        client_data = json.loads(client_data_json)
        return base64url_to_bytes(client_data["challenge"])
    except (ValueError, TypeError, KeyError) as e:
        raise PayloadDecodeError("clientDataJSON has no decodable challenge") from e


def parse_transports(raw: Any) -> list:
    transports = []
    for item in raw or []:
        try:
            transports.append(AuthenticatorTransport(item))
        except ValueError:
            continue
    return transports


def decode_registration_response(payload: Dict[str, Any]) -> RegistrationCredential:
    response = payload.get("response")
    if not isinstance(response, dict):
        raise PayloadDecodeError("missing field 'response'")
    raw_id = decode_field(payload, "rawId")
    decode_field(payload, "id")
    return RegistrationCredential(
        id=payload["id"],
        raw_id=raw_id,
        response=AuthenticatorAttestationResponse(
            client_data_json=decode_field(response, "clientDataJSON"),
            attestation_object=decode_field(response, "attestationObject"),
            transports=parse_transports(response.get("transports")),
        ),
        type=PublicKeyCredentialType.PUBLIC_KEY,
    )


def decode_authentication_response(payload: Dict[str, Any]) -> AuthenticationCredential:
    response = payload.get("response")
    if not isinstance(response, dict):
        raise PayloadDecodeError("missing field 'response'")
    raw_id = decode_field(payload, "rawId")
    decode_field(payload, "id")
    user_handle = decode_field(response, "userHandle") if response.get("userHandle") else None
    return AuthenticationCredential(
        id=payload["id"],
        raw_id=raw_id,
        response=AuthenticatorAssertionResponse(
            client_data_json=decode_field(response, "clientDataJSON"),
            authenticator_data=decode_field(response, "authenticatorData"),
            signature=decode_field(response, "signature"),
            user_handle=user_handle,
        ),
        type=PublicKeyCredentialType.PUBLIC_KEY,
    )


def normalize_aaguid(aaguid: Union[bytes, str, uuid.UUID, None]) -> Optional[str]:
    """
    Normalize an authenticator AAGUID to 32 lowercase hex characters.

    Accepts the 16 raw bytes, a UUID, or a string with or without dashes.
    """
    if aaguid is None:
        return None
    if isinstance(aaguid, uuid.UUID):
        return aaguid.hex
    if isinstance(aaguid, (bytes, bytearray)):
        if len(aaguid) != 16:
            raise ValueError("AAGUID must be 16 bytes")
        return bytes(aaguid).hex()
    return uuid.UUID(aaguid.strip()).hex


def encode_user_handle(user_id: str) -> str:
    return bytes_to_base64url(user_id.encode("utf-8"))
