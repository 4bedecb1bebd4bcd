"""
Software FIDO2 authenticator for tests.

Produces real "none" attestations and ES256 assertions over a P-256 key so
the ceremonies run through py_webauthn's full verification.
"""

import hashlib
import json
import os
import struct
from typing import Optional

import cbor2
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from webauthn.helpers import bytes_to_base64url

RP_ID = "localhost"
ORIGIN = "http://localhost:3000"

FLAG_USER_PRESENT = 0x01
FLAG_ATTESTED_CREDENTIAL_DATA = 0x40


class SoftAuthenticator:
    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN, aaguid: bytes = bytes(range(16))):
        self.rp_id = rp_id
        self.origin = origin
        self.aaguid = aaguid
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(32)
        self.sign_count = 0

    @property
    def credential_id_b64(self) -> str:
        return bytes_to_base64url(self.credential_id)

    def _rp_id_hash(self) -> bytes:
        return hashlib.sha256(self.rp_id.encode("utf-8")).digest()

    def _cose_public_key(self) -> bytes:
        numbers = self.private_key.public_key().public_numbers()
        return cbor2.dumps(
            {1: 2, 3: -7, -1: 1, -2: numbers.x.to_bytes(32, "big"), -3: numbers.y.to_bytes(32, "big")}
        )

    def _client_data(self, ceremony: str, challenge: str, origin: Optional[str] = None) -> bytes:
        return json.dumps(
            {"type": ceremony, "challenge": challenge, "origin": origin or self.origin, "crossOrigin": False}
        ).encode("utf-8")

    def register(self, challenge: str, origin: Optional[str] = None) -> dict:
        """Answer navigator.credentials.create() for the given challenge."""
        client_data = self._client_data("webauthn.create", challenge, origin)
        auth_data = (
            self._rp_id_hash()
            + bytes([FLAG_USER_PRESENT | FLAG_ATTESTED_CREDENTIAL_DATA])
            + struct.pack(">I", self.sign_count)
            + self.aaguid
            + struct.pack(">H", len(self.credential_id))
            + self.credential_id
            + self._cose_public_key()
        )
        attestation_object = cbor2.dumps({"fmt": "none", "attStmt": {}, "authData": auth_data})
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "attestationObject": bytes_to_base64url(attestation_object),
                "transports": ["usb"],
            },
        }

    def authenticate(self, challenge: str, signing_key: Optional[ec.EllipticCurvePrivateKey] = None) -> dict:
        """Answer navigator.credentials.get(); the counter advances by one per call."""
        self.sign_count += 1
        client_data = self._client_data("webauthn.get", challenge)
        auth_data = self._rp_id_hash() + bytes([FLAG_USER_PRESENT]) + struct.pack(">I", self.sign_count)
        key = signing_key or self.private_key
        signature = key.sign(auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256()))
        return {
            "id": self.credential_id_b64,
            "rawId": self.credential_id_b64,
            "type": "public-key",
            "response": {
                "clientDataJSON": bytes_to_base64url(client_data),
                "authenticatorData": bytes_to_base64url(auth_data),
                "signature": bytes_to_base64url(signature),
            },
        }
