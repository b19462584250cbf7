"""
Blood Allocation Engine - Compatibility Matrix
===============================================
Which donor blood types may supply which recipient, per donation type.

The rules are written out as explicit tables so they can be audited
line by line against a transfusion reference chart. Each row lists the
acceptable donors for one recipient in preference order: exact match
first, universal donors last.

  Cells (whole blood, red blood cells): classical ABO/Rh.
      O- is the universal donor, AB+ the universal recipient, and an
      Rh-negative recipient never receives Rh-positive cells.

  Plasma: ABO direction inverted, Rh not considered.
      AB is the universal plasma donor, O the universal plasma recipient.
"""

from __future__ import annotations

from bloodalloc.errors import IncompatibleTypes
from bloodalloc.models import BloodType, DonationType


# ═══════════════════════════════════════════════════════════════════════════
# TABLES  (recipient → donors, in preference order)
# ═══════════════════════════════════════════════════════════════════════════

CELL_TABLE = {
    "O-":  ["O-"],
    "O+":  ["O+", "O-"],
    "A-":  ["A-", "O-"],
    "A+":  ["A+", "A-", "O+", "O-"],
    "B-":  ["B-", "O-"],
    "B+":  ["B+", "B-", "O+", "O-"],
    "AB-": ["AB-", "A-", "B-", "O-"],
    "AB+": ["AB+", "AB-", "A+", "A-", "B+", "B-", "O+", "O-"],
}

PLASMA_TABLE = {
    "O-":  ["O-", "O+", "A-", "A+", "B-", "B+", "AB-", "AB+"],
    "O+":  ["O+", "O-", "A+", "A-", "B+", "B-", "AB+", "AB-"],
    "A-":  ["A-", "A+", "AB-", "AB+"],
    "A+":  ["A+", "A-", "AB+", "AB-"],
    "B-":  ["B-", "B+", "AB-", "AB+"],
    "B+":  ["B+", "B-", "AB+", "AB-"],
    "AB-": ["AB-", "AB+"],
    "AB+": ["AB+", "AB-"],
}


def _as_enum_table(table: dict[str, list[str]]) -> dict[BloodType, tuple[BloodType, ...]]:
    return {
        BloodType(recipient): tuple(BloodType(d) for d in donors)
        for recipient, donors in table.items()
    }


DONOR_TABLES: dict[DonationType, dict[BloodType, tuple[BloodType, ...]]] = {
    DonationType.WHOLE_BLOOD: _as_enum_table(CELL_TABLE),
    DonationType.RED_BLOOD_CELLS: _as_enum_table(CELL_TABLE),
    DonationType.PLASMA: _as_enum_table(PLASMA_TABLE),
}


# ═══════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ═══════════════════════════════════════════════════════════════════════════

def is_compatible(recipient: BloodType, donor: BloodType, donation_type: DonationType) -> bool:
    """True if `donor` product of `donation_type` may be given to `recipient`."""
    return donor in DONOR_TABLES[donation_type][recipient]


def compatible_donors(recipient: BloodType, donation_type: DonationType) -> tuple[BloodType, ...]:
    """Donor types acceptable for `recipient`, exact match first."""
    return DONOR_TABLES[donation_type][recipient]


def compatible_recipients(donor: BloodType, donation_type: DonationType) -> tuple[BloodType, ...]:
    """Recipient types that may receive `donor` product (inverse view of the table)."""
    table = DONOR_TABLES[donation_type]
    return tuple(r for r in BloodType if donor in table[r])


def donor_preference(recipient: BloodType, donor: BloodType, donation_type: DonationType) -> int:
    """Position of `donor` in the recipient's row; 0 is an exact match."""
    return compatible_donors(recipient, donation_type).index(donor)


def ensure_compatible(recipient: BloodType, donor: BloodType, donation_type: DonationType) -> None:
    if not is_compatible(recipient, donor, donation_type):
        raise IncompatibleTypes(recipient, donor, donation_type)


def matrix(donation_type: DonationType) -> dict[str, dict[str, bool]]:
    """Full recipient × donor grid, for display and the HTTP surface."""
    return {
        r.value: {d.value: is_compatible(r, d, donation_type) for d in BloodType}
        for r in BloodType
    }
