"""Dispute workflow: filing, listing, triage, comments and evidence uploads."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session, aliased
from werkzeug.utils import secure_filename

from database import (
    Dispute,
    DisputeAttachment,
    DisputeComment,
    DisputeHistory,
    Order,
    OrderItem,
    User,
    _as_int,
    _page_window,
    _utcnow,
    format_order_reference,
    paginate,
    session_scope,
)
from errors import NotFoundError, PermissionDenied, ValidationError

logger = logging.getLogger(__name__)

DISPUTE_TYPES = ("order_issue", "product_quality", "delivery", "payment", "other")
DISPUTE_STATUSES = ("open", "in_progress", "resolved", "closed")
DISPUTE_PRIORITIES = ("low", "medium", "high", "urgent")

ALLOWED_ATTACHMENT_EXTENSIONS = {"jpeg", "jpg", "png", "pdf"}
ALLOWED_ATTACHMENT_MIMETYPES = {"image/jpeg", "image/jpg", "image/png", "application/pdf"}
MAX_ATTACHMENT_BYTES = 5 * 1024 * 1024
MAX_ATTACHMENTS_PER_REQUEST = 5

UPLOAD_DIR = Path(os.getenv("LOCALBUY_UPLOAD_DIR", str(Path(__file__).with_name("static").joinpath("uploads"))))
DISPUTE_UPLOAD_SUBDIR = "disputes"

SORTABLE_COLUMNS = {
    "created_at": Dispute.created_at,
    "updated_at": Dispute.updated_at,
    "status": Dispute.status,
    "priority": Dispute.priority,
    "type": Dispute.type,
    "title": Dispute.title,
}


# --------------------------------------------------------------------------------------
# Access and validation helpers
# --------------------------------------------------------------------------------------


def _actor_id(actor: Mapping[str, object]) -> int:
    return _as_int(actor.get("id"))


def _is_admin(actor: Mapping[str, object]) -> bool:
    return actor.get("role") == "admin"


def _can_access(actor: Mapping[str, object], dispute: Dispute) -> bool:
    actor_id = _actor_id(actor)
    return _is_admin(actor) or actor_id in (dispute.customer_id, dispute.shopkeeper_id, dispute.assigned_to)


def _load_dispute(session: Session, actor: Mapping[str, object], dispute_id: int) -> Dispute:
    dispute = session.get(Dispute, dispute_id)
    if not dispute:
        raise NotFoundError("Dispute not found")
    if not _can_access(actor, dispute):
        raise PermissionDenied("Access denied")
    return dispute


def _file_size(upload) -> int:
    stream = upload.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def validate_attachments(files: Iterable) -> list:
    """Return the uploads worth keeping, raising on the first one that breaks the rules."""

    uploads = [upload for upload in files if upload is not None and getattr(upload, "filename", "")]
    if len(uploads) > MAX_ATTACHMENTS_PER_REQUEST:
        raise ValidationError(f"You can upload at most {MAX_ATTACHMENTS_PER_REQUEST} files at a time")
    for upload in uploads:
        extension = Path(upload.filename).suffix.lower().lstrip(".")
        mimetype = (upload.mimetype or "").lower()
        if extension not in ALLOWED_ATTACHMENT_EXTENSIONS or mimetype not in ALLOWED_ATTACHMENT_MIMETYPES:
            raise ValidationError("Only jpeg, jpg, png, and pdf files are allowed")
        if _file_size(upload) > MAX_ATTACHMENT_BYTES:
            raise ValidationError(f"{upload.filename} is larger than 5 MB")
    return uploads


def _store_attachments(
    session: Session,
    dispute_id: int,
    uploads: Sequence,
    uploaded_by: int,
    saved_paths: list[Path],
) -> list[DisputeAttachment]:
    target_dir = UPLOAD_DIR / DISPUTE_UPLOAD_SUBDIR
    target_dir.mkdir(parents=True, exist_ok=True)
    attachments = []
    for upload in uploads:
        original_name = secure_filename(upload.filename) or "attachment"
        size = _file_size(upload)
        unique_name = f"{uuid4().hex}{Path(original_name).suffix.lower()}"
        destination = target_dir / unique_name
        upload.save(destination)
        saved_paths.append(destination)
        attachment = DisputeAttachment(
            dispute_id=dispute_id,
            file_name=original_name,
            file_path=f"{DISPUTE_UPLOAD_SUBDIR}/{unique_name}",
            file_type=(upload.mimetype or "").lower(),
            file_size=size,
            uploaded_by=uploaded_by,
        )
        session.add(attachment)
        attachments.append(attachment)
    return attachments


def _discard_files(paths: Iterable[Path]) -> None:
    for path in paths:
        try:
            path.unlink()
        except FileNotFoundError:
            continue


# --------------------------------------------------------------------------------------
# Serialization
# --------------------------------------------------------------------------------------


def _dispute_select():
    customer = aliased(User)
    shopkeeper = aliased(User)
    assignee = aliased(User)
    comment_count = (
        select(func.count(DisputeComment.id)).where(DisputeComment.dispute_id == Dispute.id).scalar_subquery()
    )
    attachment_count = (
        select(func.count(DisputeAttachment.id)).where(DisputeAttachment.dispute_id == Dispute.id).scalar_subquery()
    )
    return (
        select(
            Dispute,
            customer.name.label("customer_name"),
            shopkeeper.name.label("shopkeeper_name"),
            assignee.name.label("assigned_to_name"),
            comment_count.label("comment_count"),
            attachment_count.label("attachment_count"),
        )
        .join(customer, customer.id == Dispute.customer_id, isouter=True)
        .join(shopkeeper, shopkeeper.id == Dispute.shopkeeper_id, isouter=True)
        .join(assignee, assignee.id == Dispute.assigned_to, isouter=True)
    )


def _serialize_dispute(dispute: Dispute, **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": dispute.id,
        "order_id": dispute.order_id,
        "order_reference": format_order_reference(dispute.order_id),
        "customer_id": dispute.customer_id,
        "shopkeeper_id": dispute.shopkeeper_id,
        "assigned_to": dispute.assigned_to,
        "title": dispute.title,
        "description": dispute.description,
        "type": dispute.type,
        "status": dispute.status,
        "priority": dispute.priority,
        "resolved_at": dispute.resolved_at,
        "created_at": dispute.created_at,
        "updated_at": dispute.updated_at,
    }
    payload.update(extra)
    return payload


def _serialize_comment(comment: DisputeComment, **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": comment.id,
        "dispute_id": comment.dispute_id,
        "user_id": comment.user_id,
        "comment": comment.comment,
        "is_internal": bool(comment.is_internal),
        "created_at": comment.created_at,
    }
    payload.update(extra)
    return payload


def _serialize_attachment(attachment: DisputeAttachment, **extra: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": attachment.id,
        "dispute_id": attachment.dispute_id,
        "file_name": attachment.file_name,
        "file_path": attachment.file_path,
        "file_type": attachment.file_type,
        "file_size": attachment.file_size,
        "uploaded_by": attachment.uploaded_by,
        "created_at": attachment.created_at,
    }
    payload.update(extra)
    return payload


# --------------------------------------------------------------------------------------
# Operations
# --------------------------------------------------------------------------------------


def create_dispute(
    customer: Mapping[str, object],
    order_id: object,
    title: str,
    description: str,
    dispute_type: str,
    *,
    comment: Optional[str] = None,
    files: Iterable = (),
) -> dict[str, object]:
    """File a dispute against one of the customer's orders.

    The dispute, its evidence, the optional opening comment and the first
    history row are written in a single transaction; files already written to
    disk are removed again if that transaction fails.
    """

    order_value = _as_int(order_id, 0)
    title = (title or "").strip()
    description = (description or "").strip()
    if order_value <= 0:
        raise ValidationError("Invalid order ID")
    if not 5 <= len(title) <= 255:
        raise ValidationError("Title must be between 5 and 255 characters")
    if len(description) < 10:
        raise ValidationError("Description must be at least 10 characters long")
    if dispute_type not in DISPUTE_TYPES:
        raise ValidationError("Invalid dispute type")
    uploads = validate_attachments(files)

    customer_id = _actor_id(customer)
    saved_paths: list[Path] = []
    try:
        with session_scope() as session:
            order = session.get(Order, order_value)
            if not order or order.user_id != customer_id:
                raise NotFoundError("Order not found")
            shopkeeper_id = session.execute(
                select(OrderItem.shopkeeper_id)
                .where(OrderItem.order_id == order.id)
                .order_by(OrderItem.id.asc())
                .limit(1)
            ).scalar_one_or_none()

            dispute = Dispute(
                order_id=order.id,
                customer_id=customer_id,
                shopkeeper_id=shopkeeper_id,
                title=title,
                description=description,
                type=dispute_type,
                status="open",
                priority="medium",
            )
            session.add(dispute)
            session.flush()

            attachments = _store_attachments(session, dispute.id, uploads, customer_id, saved_paths)
            if comment and comment.strip():
                session.add(DisputeComment(dispute_id=dispute.id, user_id=customer_id, comment=comment.strip()))
            session.add(
                DisputeHistory(
                    dispute_id=dispute.id,
                    changed_by=customer_id,
                    old_status=None,
                    new_status="open",
                    old_priority=None,
                    new_priority="medium",
                )
            )
            session.flush()
            payload = _serialize_dispute(dispute, attachment_count=len(attachments))
    except Exception:
        _discard_files(saved_paths)
        raise

    logger.info("Dispute %s filed by user %s on order %s", payload["id"], customer_id, order_value)
    return payload


def list_disputes(
    actor: Mapping[str, object],
    *,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    dispute_type: Optional[str] = None,
    assigned_to: object = None,
    page: object = 1,
    limit: object = 10,
    sort: str = "created_at",
    order: str = "desc",
) -> dict[str, object]:
    """Return the disputes the actor may see, filtered and paginated."""

    page_value, limit_value = _page_window(page, limit, default_limit=10)
    filters = []
    role = actor.get("role")
    if role == "customer":
        filters.append(Dispute.customer_id == _actor_id(actor))
    elif role == "shopkeeper":
        filters.append(Dispute.shopkeeper_id == _actor_id(actor))
    elif role != "admin":
        raise PermissionDenied("Access denied")

    if status:
        filters.append(Dispute.status == status)
    if priority:
        filters.append(Dispute.priority == priority)
    if dispute_type:
        filters.append(Dispute.type == dispute_type)
    if assigned_to not in (None, ""):
        filters.append(Dispute.assigned_to == _as_int(assigned_to, -1))

    sort_column = SORTABLE_COLUMNS.get(sort, Dispute.created_at)
    direction = sort_column.asc() if str(order).lower() == "asc" else sort_column.desc()

    with session_scope() as session:
        total = session.scalar(select(func.count(Dispute.id)).where(*filters)) or 0
        rows = session.execute(
            _dispute_select()
            .where(*filters)
            .order_by(direction, Dispute.id.desc())
            .offset((page_value - 1) * limit_value)
            .limit(limit_value)
        ).all()
        disputes = [
            _serialize_dispute(
                row.Dispute,
                customer_name=row.customer_name,
                shopkeeper_name=row.shopkeeper_name,
                assigned_to_name=row.assigned_to_name,
                comment_count=int(row.comment_count or 0),
                attachment_count=int(row.attachment_count or 0),
            )
            for row in rows
        ]
    return {"disputes": disputes, "pagination": paginate(int(total), page_value, limit_value)}


def get_dispute_details(actor: Mapping[str, object], dispute_id: int) -> dict[str, object]:
    """Dispute with comments, attachments and history (newest first)."""

    with session_scope() as session:
        dispute = _load_dispute(session, actor, dispute_id)
        row = session.execute(_dispute_select().where(Dispute.id == dispute_id)).one()
        order = session.get(Order, dispute.order_id)

        comment_stmt = (
            select(DisputeComment, User.name, User.role)
            .join(User, User.id == DisputeComment.user_id, isouter=True)
            .where(DisputeComment.dispute_id == dispute_id)
            .order_by(DisputeComment.created_at.asc(), DisputeComment.id.asc())
        )
        if not _is_admin(actor):
            comment_stmt = comment_stmt.where(DisputeComment.is_internal.is_(False))
        comments = [
            _serialize_comment(comment, user_name=name, user_role=role)
            for comment, name, role in session.execute(comment_stmt).all()
        ]

        attachments = [
            _serialize_attachment(attachment, uploaded_by_name=name)
            for attachment, name in session.execute(
                select(DisputeAttachment, User.name)
                .join(User, User.id == DisputeAttachment.uploaded_by, isouter=True)
                .where(DisputeAttachment.dispute_id == dispute_id)
                .order_by(DisputeAttachment.created_at.asc(), DisputeAttachment.id.asc())
            ).all()
        ]

        changed_by = aliased(User)
        old_assignee = aliased(User)
        new_assignee = aliased(User)
        history_rows = session.execute(
            select(
                DisputeHistory,
                changed_by.name.label("changed_by_name"),
                old_assignee.name.label("old_assigned_name"),
                new_assignee.name.label("new_assigned_name"),
            )
            .join(changed_by, changed_by.id == DisputeHistory.changed_by, isouter=True)
            .join(old_assignee, old_assignee.id == DisputeHistory.old_assigned_to, isouter=True)
            .join(new_assignee, new_assignee.id == DisputeHistory.new_assigned_to, isouter=True)
            .where(DisputeHistory.dispute_id == dispute_id)
            .order_by(DisputeHistory.created_at.desc(), DisputeHistory.id.desc())
        ).all()
        history = [
            {
                "id": entry.id,
                "changed_by": entry.changed_by,
                "changed_by_name": changed_by_name,
                "old_status": entry.old_status,
                "new_status": entry.new_status,
                "old_priority": entry.old_priority,
                "new_priority": entry.new_priority,
                "old_assigned_to": entry.old_assigned_to,
                "new_assigned_to": entry.new_assigned_to,
                "old_assigned_name": old_name,
                "new_assigned_name": new_name,
                "created_at": entry.created_at,
            }
            for entry, changed_by_name, old_name, new_name in history_rows
        ]

        return {
            "dispute": _serialize_dispute(
                dispute,
                customer_name=row.customer_name,
                shopkeeper_name=row.shopkeeper_name,
                assigned_to_name=row.assigned_to_name,
                order_amount=float(order.total_amount) if order else None,
                order_date=order.created_at if order else None,
            ),
            "comments": comments,
            "attachments": attachments,
            "history": history,
        }


def update_dispute(
    actor: Mapping[str, object],
    dispute_id: int,
    *,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    assigned_to: object = None,
) -> dict[str, object]:
    """Change status, priority or assignee and record one history row."""

    if status is not None and status not in DISPUTE_STATUSES:
        raise ValidationError("Invalid status")
    if priority is not None and priority not in DISPUTE_PRIORITIES:
        raise ValidationError("Invalid priority")
    assignee_id: Optional[int] = None
    if assigned_to not in (None, ""):
        assignee_id = _as_int(assigned_to, 0)
        if assignee_id <= 0:
            raise ValidationError("Invalid assignee ID")
    if status is None and priority is None and assignee_id is None:
        raise ValidationError("No updates provided")

    actor_id = _actor_id(actor)
    with session_scope() as session:
        dispute = _load_dispute(session, actor, dispute_id)

        triager = _is_admin(actor) or actor_id == dispute.assigned_to
        if (priority is not None or assignee_id is not None) and not _is_admin(actor):
            raise PermissionDenied("Only admins can change priority or assignment")
        if status is not None and not triager and actor_id != dispute.shopkeeper_id:
            if status != "closed":
                raise PermissionDenied("Customers can only close their disputes")

        if assignee_id is not None:
            assignee = session.get(User, assignee_id)
            if not assignee or assignee.role != "admin":
                raise ValidationError("Disputes can only be assigned to admins")

        history = DisputeHistory(
            dispute_id=dispute.id,
            changed_by=actor_id,
            old_status=dispute.status,
            new_status=status or dispute.status,
            old_priority=dispute.priority,
            new_priority=priority or dispute.priority,
            old_assigned_to=dispute.assigned_to,
            new_assigned_to=assignee_id if assignee_id is not None else dispute.assigned_to,
        )
        if status is not None:
            dispute.status = status
            if status == "resolved":
                dispute.resolved_at = _utcnow()
        if priority is not None:
            dispute.priority = priority
        if assignee_id is not None:
            dispute.assigned_to = assignee_id
        session.add(history)
        session.flush()
        payload = _serialize_dispute(dispute)

    logger.info("Dispute %s updated by user %s", dispute_id, actor_id)
    return payload


def add_comment(
    actor: Mapping[str, object],
    dispute_id: int,
    comment: str,
    *,
    is_internal: bool = False,
) -> dict[str, object]:
    text = (comment or "").strip()
    if not text:
        raise ValidationError("Comment cannot be empty")
    with session_scope() as session:
        dispute = _load_dispute(session, actor, dispute_id)
        entry = DisputeComment(
            dispute_id=dispute.id,
            user_id=_actor_id(actor),
            comment=text,
            is_internal=bool(is_internal) and _is_admin(actor),
        )
        session.add(entry)
        session.flush()
        return _serialize_comment(entry, user_name=actor.get("name"), user_role=actor.get("role"))


def add_attachments(actor: Mapping[str, object], dispute_id: int, files: Iterable) -> list[dict[str, object]]:
    uploads = validate_attachments(files)
    if not uploads:
        raise ValidationError("No files uploaded")

    saved_paths: list[Path] = []
    try:
        with session_scope() as session:
            dispute = _load_dispute(session, actor, dispute_id)
            attachments = _store_attachments(session, dispute.id, uploads, _actor_id(actor), saved_paths)
            session.flush()
            return [_serialize_attachment(attachment) for attachment in attachments]
    except Exception:
        _discard_files(saved_paths)
        raise
