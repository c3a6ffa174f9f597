from fastapi import APIRouter, HTTPException, Depends
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr

from cbt.models.school import School
from cbt.models.user import User
from cbt.utils.base import UserRole
from cbt.services.auth import (
    REFRESH,
    InvalidToken,
    TokenPair,
    verify_password,
    get_current_user,
    create_tokens,
    hash_password,
    user_from_token,
)


router = APIRouter()


class SignupBody(BaseModel):
    name: str
    email: EmailStr
    password: str
    school_login_id: str
    role: UserRole = UserRole.STUDENT
    class_level: str | None = None
    group: str | None = None
    registration_number: str | None = None

@router.post("/signup", response_model=TokenPair)
def signup(body: SignupBody) -> TokenPair:
    if body.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Admin accounts cannot be self-registered")
    school: School | None = School.objects(login_id=body.school_login_id).first()
    if not school:
        raise HTTPException(status_code=404, detail="School not found")
    # Reject duplicate email signups early
    if User.objects(email=body.email).first():
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(
        name=body.name,
        email=body.email,
        password=hash_password(body.password),
        role=body.role.value,
        school=school,
        class_level=body.class_level,
        group=body.group,
        registration_number=body.registration_number,
    )
    user.save()
    return create_tokens(user)


@router.post("/login", response_model=TokenPair)
def login(form_data: OAuth2PasswordRequestForm = Depends()) -> TokenPair:
    # OAuth2 form: username carries the email
    user = User.objects(email=form_data.username).first()
    # Same error for unknown email and bad password
    if not user or not verify_password(form_data.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return create_tokens(user)


class RefreshBody(BaseModel):
    refresh_token: str

@router.post("/refresh", response_model=TokenPair)
def refresh_token(body: RefreshBody) -> TokenPair:
    try:
        user = user_from_token(body.refresh_token, token_type=REFRESH)
    except InvalidToken:
        raise HTTPException(status_code=401, detail="Invalid refresh token")
    return create_tokens(user)


@router.get("/me")
def me(current_user: User = Depends(get_current_user)) -> dict:
    return current_user.to_output()


@router.post("/logout")
def logout(current_user: User = Depends(get_current_user)) -> dict:
    # Bump token_version so existing tokens become invalid immediately
    current_user.token_version = str(int(current_user.token_version) + 1)
    current_user.save()
    return {"status": True}
