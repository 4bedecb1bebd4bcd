"""
FIDO2 ceremony endpoints.

Registration requires a bearer token for the user themself or an admin.
Login is open: the key is the credential. A successful login returns a JWT.
"""

from fastapi import APIRouter, Depends

from secure_key_vault.exceptions import AuthenticationFailedError, UserNotFoundError
from secure_key_vault.managers.logging_manager import get_logger
from secure_key_vault.models.api_models import (
    CeremonyOptionsResponse,
    LoginBeginRequest,
    LoginCompleteRequest,
    LoginResponse,
    RegisteredKeyResponse,
    RegistrationBeginRequest,
    RegistrationCompleteRequest,
)
from secure_key_vault.models.key_models import CallerIdentity
from secure_key_vault.routes.dependencies import get_ceremony_engine, get_current_caller, get_user_directory
from secure_key_vault.services.access_control import create_access_token, require_self_or_admin
from secure_key_vault.services.ceremony.engine import CeremonyEngine
from secure_key_vault.services.user_directory import UserDirectory

logger = get_logger(prefix="[FIDO Routes]")

router = APIRouter(prefix="/fido", tags=["FIDO2"])


@router.post("/register/begin", response_model=CeremonyOptionsResponse)
async def register_begin(
    request: RegistrationBeginRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    engine: CeremonyEngine = Depends(get_ceremony_engine),
    users: UserDirectory = Depends(get_user_directory),
):
    """Start registering a security key for a user."""
    require_self_or_admin(caller, request.user_id)
    user = await users.get(request.user_id)
    if user is None:
        raise UserNotFoundError("User not found", context={"user_id": request.user_id})
    options = await engine.begin_registration(user)
    return CeremonyOptionsResponse(options=options, user_id=user.user_id)


@router.post("/register/complete", response_model=RegisteredKeyResponse)
async def register_complete(
    request: RegistrationCompleteRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    engine: CeremonyEngine = Depends(get_ceremony_engine),
    users: UserDirectory = Depends(get_user_directory),
):
    """Finish registration; the key is stored and assigned to the user."""
    require_self_or_admin(caller, request.user_id)
    credential = await engine.complete_registration(request.attestation_response, request.user_id)
    await users.mark_fido_registered(request.user_id)
    logger.info("Key %s registered for user %s by %s", credential.serial_number, request.user_id, caller.caller_id)
    return RegisteredKeyResponse(
        key_id=credential.id,
        credential_id=credential.credential_id,
        serial_number=credential.serial_number,
        status=credential.status,
    )


@router.post("/login/begin", response_model=CeremonyOptionsResponse)
async def login_begin(
    request: LoginBeginRequest,
    engine: CeremonyEngine = Depends(get_ceremony_engine),
    users: UserDirectory = Depends(get_user_directory),
):
    """Start a key login; options list only the keys assigned to the user."""
    user = await users.find_by_email(request.email)
    if user is None:
        raise UserNotFoundError("User not found", context={"email": request.email})
    options = await engine.begin_authentication(user.user_id)
    return CeremonyOptionsResponse(options=options, user_id=user.user_id)


@router.post("/login/complete", response_model=LoginResponse)
async def login_complete(
    request: LoginCompleteRequest,
    engine: CeremonyEngine = Depends(get_ceremony_engine),
    users: UserDirectory = Depends(get_user_directory),
):
    """Verify the assertion and issue an access token."""
    user = await users.find_by_email(request.email)
    if user is None:
        raise AuthenticationFailedError(reason=UserNotFoundError("User not found", context={"email": request.email}))

    result = await engine.complete_authentication(request.assertion_response, user.user_id)
    await users.record_login(user.user_id, result.authenticated_at)
    return LoginResponse(
        access_token=create_access_token(user),
        user_id=user.user_id,
        email=user.email,
        role=user.role,
        serial_number=result.serial_number,
    )
