"""
Seller verification.

A user submits identity documents; an admin approves or rejects them. The
verification row is the source of truth and ``User.verification_status`` is a
cache of it, written only in the same transaction. Approval is the only path
to the seller role.
"""
import logging
import time
import uuid
from typing import List, Optional
from typing import get_args

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from common.error_handling import ConflictError, InvalidStateError, NotFoundError, ValidationError
from common.schemas import IdType, VerificationEvent
from common.security import Caller, ROLE_ADMIN, ROLE_SELLER, require_role
from settlement_service.db import atomic
from settlement_service.events import record_event
from settlement_service.models import User, Verification, utcnow

logger = logging.getLogger(__name__)

ID_TYPES = get_args(IdType)
REQUIRED_DOCUMENT_FIELDS = ("full_name", "address", "phone_number", "id_type", "id_number", "id_image", "selfie_image")
DECISIONS = ("approved", "rejected")

def generate_code() -> str:
    return f"VER-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"

def submit_verification(db: Session, caller: Caller, documents: dict) -> Verification:
    missing = [name for name in REQUIRED_DOCUMENT_FIELDS if not documents.get(name)]
    if missing:
        raise ValidationError(f"Missing required field: {missing[0]}", field=missing[0])
    if documents["id_type"] not in ID_TYPES:
        raise ValidationError(f"Unsupported ID type: {documents['id_type']}", field="id_type")

    user = db.get(User, caller.user_id)
    if user is None:
        raise NotFoundError("User not found", context={"user_id": caller.user_id})
    pending = db.scalar(
        select(Verification.id).where(Verification.user_id == user.id, Verification.status == "pending").limit(1)
    )
    if pending:
        raise ConflictError("You already have a pending verification request", context={"verification_id": pending})

    code = generate_code()
    with atomic(db, "submit verification"):
        # claims the user's single pending slot; a concurrent submission matches no row
        claimed = db.execute(
            update(User)
            .where(User.id == user.id, User.verification_status != "pending")
            .values(verification_status="pending", verification_code=code)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            raise ConflictError("You already have a pending verification request")

        verification = Verification(
            code=code,
            user_id=user.id,
            full_name=documents["full_name"],
            address=documents["address"],
            phone_number=documents["phone_number"],
            id_type=documents["id_type"],
            id_number=documents["id_number"],
            id_image=documents["id_image"],
            selfie_image=documents["selfie_image"],
            proof_of_ownership=documents.get("proof_of_ownership"),
            status="pending",
        )
        db.add(verification)
        db.flush()
        record_event(db, VerificationEvent(
            type="VerificationSubmitted", verification_id=verification.id, code=code, user_id=user.id,
        ))

    db.refresh(user)
    logger.info(f"🪪 Verification {code} submitted by user {user.id}")
    return verification

def _apply_decision(user: User, decision: str) -> None:
    if decision == "approved":
        if user.role != ROLE_ADMIN:
            user.role = ROLE_SELLER
        user.is_verified = True
    user.verification_status = decision

def review_verification(
    db: Session,
    caller: Caller,
    verification_id: str,
    decision: str,
    rejection_reason: Optional[str] = None,
) -> Verification:
    require_role(caller, ROLE_ADMIN)
    if decision not in DECISIONS:
        raise ValidationError(f"Decision must be one of {', '.join(DECISIONS)}", field="status")

    verification = db.execute(
        select(Verification).where(Verification.id == verification_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if verification is None:
        raise NotFoundError("Verification not found", context={"verification_id": verification_id})
    if verification.status != "pending":
        raise InvalidStateError(
            "Verification has already been reviewed",
            context={"verification_id": verification_id, "status": verification.status},
        )
    user = db.execute(
        select(User).where(User.id == verification.user_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    with atomic(db, "review verification"):
        decided = db.execute(
            update(Verification)
            .where(Verification.id == verification.id, Verification.status == "pending")
            .values(
                status=decision,
                reviewed_at=utcnow(),
                reviewed_by=caller.user_id,
                rejection_reason=rejection_reason if decision == "rejected" else None,
            )
            .execution_options(synchronize_session=False)
        )
        if decided.rowcount != 1:
            raise InvalidStateError("Verification has already been reviewed", context={"verification_id": verification_id})
        _apply_decision(user, decision)
        record_event(db, VerificationEvent(
            type="VerificationApproved" if decision == "approved" else "VerificationRejected",
            verification_id=verification.id, code=verification.code, user_id=user.id,
            reviewed_by=caller.user_id, reason=rejection_reason,
        ))

    db.refresh(verification)
    logger.info(f"Verification {verification.code} {decision} by admin {caller.user_id}; user {user.id} role={user.role}")
    return verification

def get_latest_verification(db: Session, caller: Caller) -> Optional[Verification]:
    stmt = (
        select(Verification)
        .where(Verification.user_id == caller.user_id)
        .order_by(Verification.submitted_at.desc(), Verification.code.desc())
        .limit(1)
    )
    return db.scalar(stmt)

def list_verifications(db: Session, caller: Caller, status: Optional[str] = None) -> List[Verification]:
    require_role(caller, ROLE_ADMIN)
    stmt = select(Verification)
    if status:
        stmt = stmt.where(Verification.status == status)
    return list(db.scalars(stmt.order_by(Verification.submitted_at.desc())))
