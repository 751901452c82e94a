"""
Admin API Endpoints

- Assign a therapist to a client
"""

from fastapi import APIRouter, Depends

from src.api.dependencies import Caller, get_caller, get_roster_service, require_role
from src.models.user import AssignTherapistRequest


router = APIRouter(prefix="/admin", tags=["admin"])


@router.put("/users/{user_id}/therapist")
def assign_therapist(
    user_id: str,
    data: AssignTherapistRequest,
    caller: Caller = Depends(get_caller),
):
    """
    Assign a therapist to a client.

    SECURITY: Admin role required.
    """
    require_role(caller, "admin", "Only admins can assign therapists.")
    result = get_roster_service().assign_therapist(
        admin_id=caller.user_id,
        user_id=user_id,
        therapist_user_id=data.therapist_user_id,
    )
    return {"status": "success", "data": result}
