from __future__ import annotations

import hashlib
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import requests

from arqtrack.errors import AttestationError
from arqtrack.models import CHAINS, Contribution
from arqtrack.validation import is_valid_evm_address

logger = logging.getLogger(__name__)

# EAS schema registered for research contributions
ARQ_TRACK_SCHEMA_ID = "0x1234567890abcdef1234567890abcdef1234567890abcdef1234567890abcdef"
ARQ_TRACK_SCHEMA = (
    "string title,string description,uint256 timestamp,"
    "string farcasterPostUrl,uint8 impactScore,string[] tags"
)
ZERO_UID = "0x" + "0" * 64

_ATTESTATION_QUERY = """
query Attestation($id: String!) {
  attestation(where: {id: $id}) {
    id
    schemaId
    attester
    recipient
    data
    time
    expirationTime
    revocationTime
    refUID
    revocable
  }
}
"""


class AttestationGateway(Protocol):
    def attest(self, contribution: Contribution, attester_address: str) -> str: ...

    def verify(self, attestation_id: str) -> bool: ...


@dataclass(frozen=True)
class EASAttestation:
    id: str
    schema: str
    attester: str
    recipient: str
    data: str
    timestamp: int
    expiration_time: int = 0
    revocation_time: int = 0
    ref_uid: str = ZERO_UID
    revocable: bool = True


def encode_contribution_data(contribution: Contribution) -> str:
    """Hex-encode the contribution fields covered by the schema."""
    data = {
        "title": contribution.title,
        "description": contribution.description,
        "timestamp": int(contribution.timestamp.timestamp()),
        "farcasterPostUrl": contribution.post_url or "",
        "impactScore": contribution.impact_score,
        "tags": list(contribution.tags),
    }
    return "0x" + json.dumps(data, separators=(",", ":")).encode("utf-8").hex()


class EASService:
    """
    Attestation gateway in the shape of the Ethereum Attestation Service.

    Attestations are issued locally with a derived UID; nothing is signed or
    submitted on-chain. When remote_verify is set, lookups fall back to the
    chain's EAS GraphQL indexer for UIDs not issued by this process.
    """

    def __init__(
        self,
        chain: str = "base",
        remote_verify: bool = False,
        timeout_s: int = 20,
        session: Optional[requests.Session] = None,
    ) -> None:
        if chain not in CHAINS:
            raise ValueError(f"Unsupported chain for attestations: {chain}")
        self.chain = chain
        self.graphql_url = CHAINS[chain].eas_graphql_url
        self.remote_verify = remote_verify
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self._issued: Dict[str, EASAttestation] = {}

    def attest(self, contribution: Contribution, attester_address: str) -> str:
        if not is_valid_evm_address(attester_address):
            raise AttestationError(f"Invalid attester address: {attester_address!r}")

        encoded = encode_contribution_data(contribution)
        nonce = secrets.token_hex(16)
        digest = hashlib.sha256(
            f"{ARQ_TRACK_SCHEMA_ID}:{attester_address}:{contribution.researcher_address}:{encoded}:{nonce}".encode("utf-8")
        ).hexdigest()
        uid = "0x" + digest

        self._issued[uid] = EASAttestation(
            id=uid,
            schema=ARQ_TRACK_SCHEMA_ID,
            attester=attester_address,
            recipient=contribution.researcher_address,
            data=encoded,
            timestamp=int(time.time()),
        )
        logger.info("Created attestation %s for contribution %s on %s", uid, contribution.id, self.chain)
        return uid

    def revoke(self, attestation_id: str) -> bool:
        att = self._issued.get(attestation_id)
        if att is None or not att.revocable or att.revocation_time:
            return False
        self._issued[attestation_id] = EASAttestation(
            id=att.id,
            schema=att.schema,
            attester=att.attester,
            recipient=att.recipient,
            data=att.data,
            timestamp=att.timestamp,
            expiration_time=att.expiration_time,
            revocation_time=int(time.time()),
            ref_uid=att.ref_uid,
            revocable=att.revocable,
        )
        return True

    def get_attestation(self, attestation_id: str) -> Optional[EASAttestation]:
        att = self._issued.get(attestation_id)
        if att is not None or not self.remote_verify:
            return att
        return self._fetch_remote(attestation_id)

    def verify(self, attestation_id: str) -> bool:
        att = self.get_attestation(attestation_id)
        return att is not None and att.revocation_time == 0

    def _fetch_remote(self, attestation_id: str) -> Optional[EASAttestation]:
        payload = {"query": _ATTESTATION_QUERY, "variables": {"id": attestation_id}}
        try:
            resp = self.session.post(self.graphql_url, json=payload, timeout=self.timeout_s)
            resp.raise_for_status()
            result: Dict[str, Any] = resp.json()
        except requests.RequestException as e:
            raise AttestationError(f"EAS GraphQL request failed: {e}") from e
        except ValueError as e:
            raise AttestationError(f"EAS GraphQL invalid JSON response: {e}") from e

        if result.get("errors"):
            raise AttestationError(f"EAS GraphQL error: {result['errors']}")
        node = (result.get("data") or {}).get("attestation")
        if not node:
            return None
        try:
            return EASAttestation(
                id=node["id"],
                schema=node.get("schemaId", ""),
                attester=node.get("attester", ""),
                recipient=node.get("recipient", ""),
                data=node.get("data", "0x"),
                timestamp=int(node.get("time", 0)),
                expiration_time=int(node.get("expirationTime", 0)),
                revocation_time=int(node.get("revocationTime", 0)),
                ref_uid=node.get("refUID", ZERO_UID),
                revocable=bool(node.get("revocable", True)),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise AttestationError(f"EAS GraphQL invalid response format: {e}") from e
