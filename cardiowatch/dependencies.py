"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request

from cardiowatch.config import Settings, get_settings
from cardiowatch.services.container import ServiceContainer

CLINICIAN_ROLES = frozenset({"doctor", "nurse", "admin"})


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller extracted from the bearer JWT."""

    user_id: str  # ``sub`` claim
    role: str  # patient | doctor | nurse | admin
    patient_id: uuid.UUID | None = None  # set for patient users

    @property
    def is_clinician(self) -> bool:
        return self.role in CLINICIAN_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The JWT auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


def get_container(request: Request) -> ServiceContainer:
    container: ServiceContainer | None = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return container


def ensure_patient_access(auth: AuthContext, patient_id: uuid.UUID, clinician_ok: bool = True) -> None:
    """Patients may act only on themselves; clinicians on anyone when ``clinician_ok``."""
    if auth.patient_id is not None and auth.patient_id == patient_id:
        return
    if auth.is_admin or (clinician_ok and auth.is_clinician):
        return
    raise HTTPException(status_code=403, detail="Access denied")


def require_patient(auth: AuthContext) -> uuid.UUID:
    """Patient id of the caller; device connections belong to patients."""
    if auth.patient_id is None:
        raise HTTPException(status_code=403, detail="Only patients can connect devices")
    return auth.patient_id


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
ContainerDep = Annotated[ServiceContainer, Depends(get_container)]
AppSettings = Annotated[Settings, Depends(get_settings)]
