"""
System wiring and authentication dependencies
"""

from typing import Any, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..auth import Identity, Role
from ..exceptions import AuthError, FieldLendingError
from ..results import OperationError, OperationResult
from ..service import CollectionService, FieldLendingSystem


security = HTTPBearer(auto_error=False)

# HTTP status per error category
STATUS_BY_CATEGORY = {
    "ValidationError": status.HTTP_400_BAD_REQUEST,
    "NotFoundError": status.HTTP_404_NOT_FOUND,
    "StateConflictError": status.HTTP_409_CONFLICT,
    "BusinessRuleError": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "InvalidScheduleStateError": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "AuthError": status.HTTP_401_UNAUTHORIZED,
}


# Global system instance, created on first use
_lending_system: Optional[FieldLendingSystem] = None
_collection_service: Optional[CollectionService] = None


def get_lending_system() -> FieldLendingSystem:
    global _lending_system
    if _lending_system is None:
        _lending_system = FieldLendingSystem()
    return _lending_system


def get_collection_service(
    system: FieldLendingSystem = Depends(get_lending_system)
) -> CollectionService:
    global _collection_service
    if _collection_service is None or _collection_service.system is not system:
        _collection_service = CollectionService(system)
    return _collection_service


def error_body(error: OperationError) -> dict:
    return {"code": error.code, "message": error.message, "details": error.details}


def status_for(error: OperationError) -> int:
    return STATUS_BY_CATEGORY.get(error.category, status.HTTP_400_BAD_REQUEST)


def unwrap(result: OperationResult) -> Any:
    """Return the value of a successful result, or raise the matching HTTP error"""
    if result.ok:
        return result.value
    raise HTTPException(status_code=status_for(result.error), detail=error_body(result.error))


def http_error(error: FieldLendingError) -> HTTPException:
    failure = OperationError.from_exception(error)
    return HTTPException(status_code=status_for(failure), detail=error_body(failure))


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: FieldLendingSystem = Depends(get_lending_system)
) -> Identity:
    """Resolve the bearer token; a test administrator when auth is disabled"""
    if not system.config.auth_enabled:
        return Identity(subject_id="test_user", role=Role.ADMIN)

    token = credentials.credentials if credentials else None
    try:
        return system.authenticator.resolve(token)
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"}
        )


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return identity


def require_self_or_admin(agent_id: str, identity: Identity) -> None:
    if not identity.is_admin and identity.subject_id != agent_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="Agents may only act on their own records")
