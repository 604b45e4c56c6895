# Overview: Service-layer operations for human-readable reference codes.

from __future__ import annotations

import re
import secrets
import string

from sqlalchemy import select

from ..extensions import db
from ..models import Purchase
from backoffice.time_utils import utcnow


PURCHASE_CODE_PREFIX = "PUR"
PURCHASE_CODE_PAD = 6
ADJUSTMENT_REFERENCE_PREFIX = "ADJ"

# Sequential probes before falling back to a random suffix
MAX_SEQUENTIAL_PROBES = 5

_CODE_ALPHABET = string.ascii_uppercase + string.digits
_SEQUENTIAL_CODE = re.compile(rf"^{PURCHASE_CODE_PREFIX}-(\d{{{PURCHASE_CODE_PAD},}})$")


def _random_token(length: int = 6) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(length))


def format_purchase_code(number: int) -> str:
    return f"{PURCHASE_CODE_PREFIX}-{number:0{PURCHASE_CODE_PAD}d}"


def purchase_code_exists(code: str) -> bool:
    return db.session.query(
        db.session.query(Purchase.id).filter(Purchase.purchase_code == code).exists()
    ).scalar()


def next_purchase_code() -> str:
    """
    Allocate the next PUR-NNNNNN code.

    Sequence = number of the last-inserted sequential code + 1. Codes from
    the random fallback are skipped so they never steer the sequence. A code
    taken by a concurrent insert is re-probed with the next number; after
    MAX_SEQUENTIAL_PROBES collisions a random suffix is used instead.

    The unique constraint on purchases.purchase_code is the final
    arbiter: create_purchase() retries the whole transaction on
    IntegrityError.
    """
    # Newest first; only PUR-<digits> codes count
    result = db.session.execute(
        select(Purchase.purchase_code)
        .where(Purchase.purchase_code.like(f"{PURCHASE_CODE_PREFIX}-%"))
        .order_by(Purchase.id.desc())
        .execution_options(yield_per=100)
    )
    number = 1
    try:
        for code in result.scalars():
            match = _SEQUENTIAL_CODE.match(code)
            if match:
                number = int(match.group(1)) + 1
                break
    finally:
        result.close()

    for _ in range(MAX_SEQUENTIAL_PROBES):
        code = format_purchase_code(number)
        if not purchase_code_exists(code):
            return code
        number += 1

    while True:
        code = f"{PURCHASE_CODE_PREFIX}-{_random_token()}"
        if not purchase_code_exists(code):
            return code


def generate_adjustment_reference() -> str:
    """ADJ-<YYYYmmddHHMMSS>-<random>, used when the caller supplies none."""
    stamp = utcnow().strftime("%Y%m%d%H%M%S")
    return f"{ADJUSTMENT_REFERENCE_PREFIX}-{stamp}-{_random_token()}"
