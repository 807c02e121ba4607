"""
api/routes/accounts.py -- Account administration (admin only).

Routes:
  GET   /api/admin/accounts               -- list all accounts
  PATCH /api/admin/accounts/{identifier}  -- change role and/or active flag

A role change or disable bumps the account's credential version and
registers a revocation watermark, so tokens minted under the old trust
decision stop working immediately; the account must log in again.

Guards:
  An admin cannot disable or demote their own account -- with a single
  admin that would leave no recovery path short of the CLI.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request

from api.models import AccountPatch, AccountResponse
from auth.dependencies import require_admin
from auth.gate import AuthenticationGate
from auth.models import Principal, Role

router = APIRouter()


@router.get("/api/admin/accounts", response_model=list[AccountResponse])
def list_accounts(request: Request, principal: Principal = Depends(require_admin)) -> list[AccountResponse]:
    return [AccountResponse.from_account(a) for a in request.app.state.store.list_accounts()]


@router.patch("/api/admin/accounts/{identifier}", response_model=AccountResponse)
def update_account(
    request: Request,
    identifier: str,
    body: AccountPatch,
    principal: Principal = Depends(require_admin),
) -> AccountResponse:
    gate: AuthenticationGate = request.app.state.gate

    if body.role is None and body.is_active is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )
    if identifier == principal.subject:
        if body.is_active is False:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        if body.role is not None and body.role != Role.admin:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_demotion", "message": "You cannot remove your own admin role."},
            )

    # Raises AccountNotFound (404) before anything is written
    account = gate.store.find(identifier)
    if body.role is not None and body.role != account.role:
        account = gate.change_role(identifier, body.role)
    if body.is_active is not None and body.is_active != account.is_active:
        account = gate.disable(identifier) if not body.is_active else gate.enable(identifier)
    return AccountResponse.from_account(account)
