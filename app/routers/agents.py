from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses
from app.core.deps import get_db
from app.core.id_utils import generate_shortuuid
from app.core.permissions import require_roles
from app.models.user import Agent, User
from app.schemas.auth import AgentCreateIn, AgentOut
from app.services.audit_service import log_audit_event

router = APIRouter(prefix="/agents", tags=["agents"])


def _agent_out(agent: Agent, user: User) -> AgentOut:
    return AgentOut(
        id=agent.id,
        user_id=user.id,
        email=user.email,
        full_name=user.full_name,
        location=agent.location,
        is_active=agent.is_active,
    )


@router.post(
    "",
    response_model=AgentOut,
    summary="Promote a user to pickup agent",
    responses=error_responses(400, 401, 403, 404, 409, 422, 500),
)
def create_agent(
    payload: AgentCreateIn,
    db: Session = Depends(get_db),
    admin: User = Depends(require_roles("ADMIN")),
):
    user = db.execute(
        select(User).where(func.lower(User.email) == payload.email.strip().lower()).with_for_update()
    ).scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role in {"ADMIN", "VENDOR"}:
        raise HTTPException(status_code=409, detail=f"{user.role.title()} accounts cannot become agents")

    agent = db.execute(select(Agent).where(Agent.user_id == user.id)).scalar_one_or_none()
    if agent:
        agent.location = payload.location
        agent.is_active = True
    else:
        agent = Agent(id=generate_shortuuid(), user_id=user.id, location=payload.location, is_active=True)
        db.add(agent)
    previous_role = user.role
    user.role = "AGENT"
    db.flush()

    log_audit_event(
        db,
        actor_user_id=admin.id,
        action="agent.assign",
        target_type="agent",
        target_id=agent.id,
        metadata_json={"user_id": user.id, "previous_role": previous_role, "location": agent.location},
    )
    db.commit()
    db.refresh(agent)
    return _agent_out(agent, user)


@router.get(
    "",
    response_model=list[AgentOut],
    summary="List pickup agents",
    responses=error_responses(401, 403, 422, 500),
)
def list_agents(
    active_only: bool = Query(default=False),
    db: Session = Depends(get_db),
    _: User = Depends(require_roles("ADMIN")),
):
    stmt = select(Agent, User).join(User, User.id == Agent.user_id)
    if active_only:
        stmt = stmt.where(Agent.is_active.is_(True))
    rows = db.execute(stmt.order_by(Agent.location.asc(), User.email.asc())).all()
    return [_agent_out(agent, user) for agent, user in rows]
