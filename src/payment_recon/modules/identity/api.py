from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from payment_recon.api.deps import get_current_user, require_admin
from payment_recon.core.db import db_session
from payment_recon.core.security import create_access_token
from payment_recon.modules.identity.models import User
from payment_recon.modules.identity.schemas import TokenOut, UserCreate, UserOut, UserUpdate
from payment_recon.modules.identity.service import (
    authenticate_user,
    create_user,
    list_users,
    update_user,
)

router = APIRouter(tags=["identity"])


@router.post("/auth/token", response_model=TokenOut)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(db_session),
) -> TokenOut:
    user = authenticate_user(session, email=form_data.username, password=form_data.password)
    return TokenOut(access_token=create_access_token(subject=str(user.id)))


@router.get("/auth/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)) -> UserOut:
    return UserOut.model_validate(user, from_attributes=True)


@router.get("/users", response_model=list[UserOut])
def list_users_endpoint(
    session: Session = Depends(db_session),
    _: User = Depends(require_admin),
) -> list[UserOut]:
    return [UserOut.model_validate(u, from_attributes=True) for u in list_users(session)]


@router.post("/users", response_model=UserOut, status_code=201)
def create_user_endpoint(
    payload: UserCreate,
    session: Session = Depends(db_session),
    _: User = Depends(require_admin),
) -> UserOut:
    user = create_user(
        session,
        email=str(payload.email),
        password=payload.password,
        role=payload.role,
        full_name=payload.full_name,
    )
    return UserOut.model_validate(user, from_attributes=True)


@router.patch("/users/{user_id}", response_model=UserOut)
def update_user_endpoint(
    user_id: uuid.UUID,
    payload: UserUpdate,
    session: Session = Depends(db_session),
    admin: User = Depends(require_admin),
) -> UserOut:
    user = update_user(
        session,
        user_id=user_id,
        acting_user_id=admin.id,
        role=payload.role,
        is_active=payload.is_active,
    )
    return UserOut.model_validate(user, from_attributes=True)
