"""Request dependencies resolving the tenant credential from upstream headers."""

from __future__ import annotations

from typing import Annotated, Literal, Optional

from fastapi import Depends, Header, HTTPException

from usage_engine.ingest.records import TenantCredential


def get_credential(
    customer_id: Annotated[Optional[str], Header(alias="x-customer-id")] = None,
    team_id: Annotated[Optional[str], Header(alias="x-team-id")] = None,
    user_id: Annotated[Optional[str], Header(alias="x-user-id")] = None,
    key_hash: Annotated[Optional[str], Header(alias="x-key-hash")] = None,
    key_scope: Annotated[
        Optional[Literal["user", "team", "customer"]],
        Header(alias="x-key-scope", description="Scope of the presenting key"),
    ] = None,
) -> TenantCredential:
    return TenantCredential(
        customer_id=customer_id or None,
        team_id=team_id or None,
        user_id=user_id or None,
        key_hash=key_hash or None,
        key_scope=key_scope,
    )


def require_customer(
    credential: Annotated[TenantCredential, Depends(get_credential)],
) -> str:
    if not credential.customer_id:
        raise HTTPException(status_code=401, detail="Missing x-customer-id header")
    return credential.customer_id


CredentialDep = Annotated[TenantCredential, Depends(get_credential)]
CustomerDep = Annotated[str, Depends(require_customer)]
