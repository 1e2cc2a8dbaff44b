"""
Software WebAuthn authenticator for tests.

Produces real ES256 "none" attestations and signed assertions in the JSON
shape browsers send, so the fido2 verification path runs end to end.
"""

import hashlib
import json
import os
import struct

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2 import cbor
from fido2.utils import websafe_encode

FLAG_USER_PRESENT = 0x01
FLAG_USER_VERIFIED = 0x04
FLAG_ATTESTED_DATA = 0x40

ZERO_AAGUID = b"\x00" * 16


class SoftAuthenticator:
    """One credential on a simulated security key."""

    def __init__(self, rp_id: str = "localhost", origin: str = "http://localhost:3000", counter: int = 0):
        self.rp_id = rp_id
        self.origin = origin
        self.counter = counter
        self.credential_id = os.urandom(32)
        self.private_key = ec.generate_private_key(ec.SECP256R1())

    @property
    def external_id(self) -> str:
        return websafe_encode(self.credential_id)

    def cose_public_key(self) -> dict:
        numbers = self.private_key.public_key().public_numbers()
        return {
            1: 2,  # kty: EC2
            3: -7,  # alg: ES256
            -1: 1,  # crv: P-256
            -2: numbers.x.to_bytes(32, "big"),
            -3: numbers.y.to_bytes(32, "big"),
        }

    def _client_data(self, ceremony: str, challenge: str, origin: str | None = None) -> bytes:
        return json.dumps(
            {
                "type": ceremony,
                "challenge": challenge,
                "origin": origin or self.origin,
                "crossOrigin": False,
            }
        ).encode("utf-8")

    def _authenticator_data(self, flags: int, attested: bytes = b"") -> bytes:
        rp_id_hash = hashlib.sha256(self.rp_id.encode("utf-8")).digest()
        return rp_id_hash + bytes([flags]) + struct.pack(">I", self.counter) + attested

    def register(self, challenge: str, origin: str | None = None) -> dict:
        """Response to navigator.credentials.create() for the given challenge."""
        attested = (
            ZERO_AAGUID
            + struct.pack(">H", len(self.credential_id))
            + self.credential_id
            + cbor.encode(self.cose_public_key())
        )
        auth_data = self._authenticator_data(FLAG_USER_PRESENT | FLAG_USER_VERIFIED | FLAG_ATTESTED_DATA, attested)
        attestation_object = cbor.encode({"fmt": "none", "attStmt": {}, "authData": auth_data})

        return {
            "id": self.external_id,
            "rawId": self.external_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(self._client_data("webauthn.create", challenge, origin)),
                "attestationObject": websafe_encode(attestation_object),
            },
            "clientExtensionResults": {},
        }

    def authenticate(self, challenge: str, origin: str | None = None, advance: bool = True) -> dict:
        """Response to navigator.credentials.get(); bumps the counter first by default."""
        if advance:
            self.counter += 1

        client_data = self._client_data("webauthn.get", challenge, origin)
        auth_data = self._authenticator_data(FLAG_USER_PRESENT | FLAG_USER_VERIFIED)
        signature = self.private_key.sign(
            auth_data + hashlib.sha256(client_data).digest(),
            ec.ECDSA(hashes.SHA256()),
        )

        return {
            "id": self.external_id,
            "rawId": self.external_id,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(client_data),
                "authenticatorData": websafe_encode(auth_data),
                "signature": websafe_encode(signature),
            },
            "clientExtensionResults": {},
        }
