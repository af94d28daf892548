from __future__ import annotations

import hmac
import re

from dashboard_api.store import UnauthorizedError

_TENANT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:@|-]{0,127}$")
_BEARER_RE = re.compile(r"(?i)^bearer\s+(\S+)$")


def resolve_tenant_id(
    tenant_header: str | None,
    *,
    authorization: str | None = None,
    expected_token: str | None = None,
) -> str:
    """Return the caller's tenant id or raise ``UnauthorizedError``.

    The tenant comes from a header set by the upstream identity provider. When
    ``expected_token`` is configured the request must also carry it as a
    bearer token.
    """
    if expected_token:
        match = _BEARER_RE.match((authorization or "").strip())
        if match is None or not hmac.compare_digest(match.group(1), expected_token):
            raise UnauthorizedError("invalid bearer token")

    if tenant_header is None:
        raise UnauthorizedError("missing tenant identity")
    tenant_id = tenant_header.strip()
    if not _TENANT_ID_RE.match(tenant_id):
        raise UnauthorizedError("invalid tenant identity")
    return tenant_id
