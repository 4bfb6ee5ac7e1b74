"""
FastAPI dependencies for identity and route requirements.
"""

from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends, Header, Request

from shared.logging import set_user_context
from .audit.models import RequestMeta
from .permissions.models import AuthenticatedUser, Role
from .permissions.requirements import Requirement, ResourceAccessRequirement
from .service import AuthorizationService


ResourceLoader = Callable[[Request, str], Awaitable[Optional[Dict[str, Any]]]]


async def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Optional[AuthenticatedUser]:
    """Identity forwarded by the authenticating gateway, or None."""
    if not x_user_id or not x_user_role:
        return None
    try:
        role = Role(x_user_role.upper())
    except ValueError:
        return None
    set_user_context(x_user_id)
    return AuthenticatedUser(id=x_user_id, email=x_user_email or "", role=role)


def require(
    service: AuthorizationService,
    requirement: Requirement,
    user_dependency: Callable[..., Optional[AuthenticatedUser]] = get_current_user,
    resource_loader: Optional[ResourceLoader] = None,
):
    """Build a route dependency that enforces ``requirement``.

    The dependency resolves to the authenticated user. For resource access
    requirements the id comes from the path (or query) parameter named by
    the requirement, and ``resource_loader`` may supply the record used for
    ownership checks.
    """

    async def dependency(
        request: Request,
        user: Optional[AuthenticatedUser] = Depends(user_dependency),
    ) -> Optional[AuthenticatedUser]:
        resource_id = None
        resource_data = None
        if isinstance(requirement, ResourceAccessRequirement):
            resource_id = request.path_params.get(requirement.id_param) or request.query_params.get(requirement.id_param)
            if resource_id is not None and resource_loader is not None:
                resource_data = await resource_loader(request, resource_id)

        await service.enforce(
            requirement,
            user,
            resource_id=resource_id,
            resource_data=resource_data,
            context=dict(request.query_params),
            request=RequestMeta.from_request(request),
        )
        return user

    return dependency
