from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ContributionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    PAID = "paid"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SystemHealth(str, Enum):
    THRIVING = "thriving"
    GROWING = "growing"
    STABLE = "stable"
    DECLINING = "declining"


SUPPORTED_CHAINS = ("base", "celo", "arbitrum")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 string, treating a missing offset as UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class ContributionData:
    """Researcher-supplied fields of a new contribution."""
    title: str
    description: str
    tags: Tuple[str, ...] = ()
    impact_score: int = 5
    post_url: Optional[str] = None


@dataclass(frozen=True)
class Contribution:
    id: str
    researcher_address: str
    researcher_fid: int
    title: str
    description: str
    tags: Tuple[str, ...]
    impact_score: int
    status: ContributionStatus
    timestamp: datetime
    post_url: Optional[str] = None
    attestation_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "researcher_address": self.researcher_address,
            "researcher_fid": self.researcher_fid,
            "title": self.title,
            "description": self.description,
            "tags": list(self.tags),
            "impact_score": self.impact_score,
            "status": self.status.value,
            "timestamp": format_timestamp(self.timestamp),
            "post_url": self.post_url,
            "attestation_id": self.attestation_id,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Contribution":
        return cls(
            id=str(d["id"]),
            researcher_address=str(d["researcher_address"]),
            researcher_fid=int(d["researcher_fid"]),
            title=str(d["title"]),
            description=str(d["description"]),
            tags=tuple(d.get("tags") or ()),
            impact_score=int(d["impact_score"]),
            status=ContributionStatus(d["status"]),
            timestamp=parse_timestamp(d["timestamp"]),
            post_url=d.get("post_url"),
            attestation_id=d.get("attestation_id"),
        )


@dataclass(frozen=True)
class Payout:
    id: str
    researcher_address: str
    researcher_fid: int
    amount: str  # native currency, 4 decimal places
    contribution_ids: Tuple[str, ...]
    status: PayoutStatus
    timestamp: datetime
    chain: str
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "researcher_address": self.researcher_address,
            "researcher_fid": self.researcher_fid,
            "amount": self.amount,
            "contribution_ids": list(self.contribution_ids),
            "status": self.status.value,
            "timestamp": format_timestamp(self.timestamp),
            "chain": self.chain,
            "tx_hash": self.tx_hash,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Payout":
        return cls(
            id=str(d["id"]),
            researcher_address=str(d["researcher_address"]),
            researcher_fid=int(d["researcher_fid"]),
            amount=str(d["amount"]),
            contribution_ids=tuple(d.get("contribution_ids") or ()),
            status=PayoutStatus(d["status"]),
            timestamp=parse_timestamp(d["timestamp"]),
            chain=str(d["chain"]),
            tx_hash=d.get("tx_hash"),
        )


@dataclass(frozen=True)
class PayoutCompleted:
    """Published once a payout settles; consumed by the contribution store."""
    payout_id: str
    contribution_ids: Tuple[str, ...]


@dataclass(frozen=True)
class ResearcherProfile:
    """Identity supplied at session start. Read-only to the engine."""
    fid: int
    address: str
    username: str = "unknown"
    display_name: str = "Unknown User"
    join_date: Optional[datetime] = None


@dataclass(frozen=True)
class Researcher:
    fid: int
    address: str
    username: str
    display_name: str
    total_contributions: int
    total_earned: str
    weekly_earnings: str
    join_date: Optional[datetime]
    status: str  # "active" | "inactive"


@dataclass(frozen=True)
class NutrientFlows:
    contributions: int
    attestations: int
    payouts: int


@dataclass(frozen=True)
class GrowthSignals:
    new_researchers: int
    contribution_growth: int
    engagement_rate: int


@dataclass(frozen=True)
class EcologicalSystem:
    nutrient_flows: NutrientFlows
    growth_signals: GrowthSignals
    system_health: SystemHealth


@dataclass(frozen=True)
class DashboardMetrics:
    total_contributions: int
    total_payouts: str
    total_value_flow: str
    active_researchers: int
    weekly_contributions: int
    weekly_payouts: str
    pending_attestations: int
    chain_distribution: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class ChainConfig:
    id: int
    name: str
    rpc_url: str
    explorer_url: str
    currency_name: str
    currency_symbol: str
    decimals: int
    eas_graphql_url: str


CHAINS: Dict[str, ChainConfig] = {
    "base": ChainConfig(
        id=8453,
        name="Base",
        rpc_url="https://mainnet.base.org",
        explorer_url="https://basescan.org",
        currency_name="Ether",
        currency_symbol="ETH",
        decimals=18,
        eas_graphql_url="https://base.easscan.org/graphql",
    ),
    "celo": ChainConfig(
        id=42220,
        name="Celo",
        rpc_url="https://forno.celo.org",
        explorer_url="https://celoscan.io",
        currency_name="Celo",
        currency_symbol="CELO",
        decimals=18,
        eas_graphql_url="https://celo.easscan.org/graphql",
    ),
    "arbitrum": ChainConfig(
        id=42161,
        name="Arbitrum One",
        rpc_url="https://arb1.arbitrum.io/rpc",
        explorer_url="https://arbiscan.io",
        currency_name="Ether",
        currency_symbol="ETH",
        decimals=18,
        eas_graphql_url="https://arbitrum.easscan.org/graphql",
    ),
}
