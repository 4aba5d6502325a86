from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.breakage import policy
from app.breakage.audit import record_event
from app.breakage.errors import ConflictError, NotFoundError, ValidationError
from app.breakage.models import User
from app.breakage.modules.products.models import Product
from app.breakage.modules.submissions.models import Item


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def validate_product_payload(payload: dict) -> list[str]:
    """Validate product creation/update payload. Returns list of errors."""
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Product name is required.")
    if not normalize_code(payload.get("code")):
        errors.append("Product code is required.")
    raw_capacity = str(payload.get("capacity") or "").strip()
    try:
        capacity = int(raw_capacity)
    except ValueError:
        capacity = 0
    if capacity <= 0:
        errors.append("Product capacity must be a positive whole number.")
    return errors


def list_products(s: Session, actor: User, *, search: str = "") -> list[Product]:
    policy.authorize(actor, policy.READ, policy.PRODUCT)
    q = s.query(Product)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Product.name.ilike(like), Product.code.ilike(like)))
    return q.order_by(Product.name.asc()).all()


def get_product(s: Session, actor: User, product_id: int) -> Product:
    policy.authorize(actor, policy.READ, policy.PRODUCT)
    product = s.get(Product, product_id)
    if not product:
        raise NotFoundError("Product", product_id)
    return product


def _ensure_code_free(s: Session, code: str, exclude_id: int | None = None) -> None:
    q = s.query(Product.id).filter(Product.code == code)
    if exclude_id is not None:
        q = q.filter(Product.id != exclude_id)
    if q.first():
        raise ConflictError(f"Product code {code} already exists.")


def create_product(s: Session, actor: User, payload: dict) -> Product:
    policy.authorize(actor, policy.INSERT, policy.PRODUCT)
    errors = validate_product_payload(payload)
    if errors:
        raise ValidationError(errors)

    code = normalize_code(payload.get("code"))
    _ensure_code_free(s, code)

    now = datetime.utcnow()
    product = Product(
        name=payload["name"].strip(),
        code=code,
        capacity=int(str(payload["capacity"]).strip()),
        created_at=now,
        updated_at=now,
    )
    s.add(product)
    try:
        s.flush()
    except IntegrityError as e:
        # Lost a race with another admin creating the same code.
        s.rollback()
        raise ConflictError(f"Product code {code} already exists.") from e

    record_event(
        s,
        actor=actor,
        action="product.create",
        target_type="Product",
        target_id=product.id,
        details={"code": product.code, "name": product.name, "capacity": product.capacity},
    )
    return product


def update_product(s: Session, actor: User, product: Product, payload: dict) -> Product:
    policy.authorize(actor, policy.UPDATE, policy.PRODUCT, product)
    errors = validate_product_payload(payload)
    if errors:
        raise ValidationError(errors)

    code = normalize_code(payload.get("code"))
    _ensure_code_free(s, code, exclude_id=product.id)

    changes = {}
    for field, new in (
        ("name", payload["name"].strip()),
        ("code", code),
        ("capacity", int(str(payload["capacity"]).strip())),
    ):
        old = getattr(product, field)
        if new != old:
            changes[field] = {"old": old, "new": new}
            setattr(product, field, new)

    if changes:
        product.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=actor,
            action="product.edit",
            target_type="Product",
            target_id=product.id,
            details={"code": product.code, "changes": changes},
        )
    return product


def product_usage_count(s: Session, product_id: int) -> int:
    return s.query(func.count(Item.id)).filter(Item.product_id == product_id).scalar() or 0


def delete_product(s: Session, actor: User, product: Product) -> None:
    """Delete a product that no item references."""
    policy.authorize(actor, policy.DELETE, policy.PRODUCT, product)
    used = product_usage_count(s, product.id)
    if used:
        raise ConflictError(f"Product {product.code} is used by {used} item(s) and cannot be deleted.")

    record_event(
        s,
        actor=actor,
        action="product.delete",
        target_type="Product",
        target_id=product.id,
        details={"code": product.code, "name": product.name},
    )
    s.delete(product)
    try:
        s.flush()
    except IntegrityError as e:
        s.rollback()
        raise ConflictError(f"Product {product.code} is referenced by submissions and cannot be deleted.") from e
