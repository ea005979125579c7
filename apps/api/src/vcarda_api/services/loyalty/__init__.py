"""Loyalty service exports."""

from .identity import (  # noqa: F401
    HttpIdentityLookup,
    IdentityLookup,
    IdentityRecord,
    NullIdentityLookup,
    StaticIdentityLookup,
)
from .ledger import AwardResult, Ledger, decode_time_uuid_cursor, encode_time_uuid_cursor  # noqa: F401
from .points_service import PointsService, ScanResult, ScanStats  # noqa: F401
from .provisioning import ProvisioningResolver  # noqa: F401
