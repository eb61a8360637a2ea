from __future__ import annotations

import re
from typing import Iterable, Tuple

from arqtrack.errors import ValidationError
from arqtrack.models import SUPPORTED_CHAINS, ContributionData

MAX_TAGS = 5
MIN_IMPACT_SCORE = 1
MAX_IMPACT_SCORE = 10

# EVM account: 0x followed by 20 bytes of hex
_EVM_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
_URL_PATTERN = re.compile(r"^https?://\S+$")


def is_valid_evm_address(address: str) -> bool:
    """
    Validate EVM address format.
    Checksum casing is not enforced.
    """
    if not address or not isinstance(address, str):
        return False
    return bool(_EVM_ADDRESS_PATTERN.match(address.strip()))


def normalize_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    out = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError(f"Tag must be a string, got {type(tag).__name__}")
        cleaned = tag.strip()
        if not cleaned:
            raise ValidationError("Tags must not be empty")
        if cleaned in out:
            raise ValidationError(f"Duplicate tag: {cleaned}")
        out.append(cleaned)
    if len(out) > MAX_TAGS:
        raise ValidationError(f"At most {MAX_TAGS} tags allowed (got {len(out)})")
    return tuple(out)


def validate_contribution(data: ContributionData) -> ContributionData:
    """
    Check a submission and return it with whitespace trimmed.
    Raises ValidationError on the first problem found.
    """
    title = (data.title or "").strip()
    description = (data.description or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if not description:
        raise ValidationError("Description is required")

    tags = normalize_tags(data.tags or ())

    score = data.impact_score
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError(f"Impact score must be an integer (got {score!r})")
    if not MIN_IMPACT_SCORE <= score <= MAX_IMPACT_SCORE:
        raise ValidationError(
            f"Impact score must be between {MIN_IMPACT_SCORE} and {MAX_IMPACT_SCORE} (got {score})"
        )

    post_url = data.post_url.strip() if data.post_url else None
    if post_url and not _URL_PATTERN.match(post_url):
        raise ValidationError(f"Invalid post URL: {post_url}")

    return ContributionData(
        title=title,
        description=description,
        tags=tags,
        impact_score=score,
        post_url=post_url or None,
    )


def validate_chain(chain: str) -> str:
    if chain not in SUPPORTED_CHAINS:
        raise ValidationError(f"Unsupported chain: {chain} (expected one of {', '.join(SUPPORTED_CHAINS)})")
    return chain
