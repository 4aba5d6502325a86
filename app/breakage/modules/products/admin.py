from flask import Blueprint, flash, g, redirect, render_template, request, url_for

from app.breakage import policy
from app.breakage.db import db_session
from app.breakage.errors import ConflictError, ValidationError
from app.breakage.models import User
from app.breakage.modules.products.service import (
    create_product,
    delete_product,
    get_product,
    list_products,
    product_usage_count,
    update_product,
)
from app.breakage.rbac import require_admin, require_login

bp = Blueprint("products", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _payload() -> dict:
    return {
        "name": request.form.get("name"),
        "code": request.form.get("code"),
        "capacity": request.form.get("capacity"),
    }


@bp.get("/products")
@require_login
def products_list():
    s = db_session()
    u = _current_user()
    search = (request.args.get("q") or "").strip()
    products = list_products(s, u, search=search)
    return render_template(
        "products/list.html",
        products=products,
        search=search,
        can_write=policy.can_write_product(u),
    )


@bp.get("/products/new")
@require_admin
def products_new_get():
    return render_template("products/form.html", product=None, form={})


@bp.post("/products/new")
@require_admin
def products_new_post():
    s = db_session()
    u = _current_user()
    try:
        product = create_product(s, u, _payload())
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return render_template("products/form.html", product=None, form=request.form), 400
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return render_template("products/form.html", product=None, form=request.form), 409
    s.commit()
    flash(f"Product {product.code} created.", "success")
    return redirect(url_for("products.products_list"))


@bp.get("/products/<int:product_id>/edit")
@require_admin
def products_edit_get(product_id: int):
    s = db_session()
    product = get_product(s, _current_user(), product_id)
    return render_template(
        "products/form.html",
        product=product,
        form={"name": product.name, "code": product.code, "capacity": product.capacity},
        usage=product_usage_count(s, product.id),
    )


@bp.post("/products/<int:product_id>/edit")
@require_admin
def products_edit_post(product_id: int):
    s = db_session()
    u = _current_user()
    product = get_product(s, u, product_id)
    try:
        update_product(s, u, product, _payload())
    except ValidationError as e:
        s.rollback()
        for msg in e.errors:
            flash(msg, "danger")
        return redirect(url_for("products.products_edit_get", product_id=product_id))
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("products.products_edit_get", product_id=product_id))
    s.commit()
    flash("Product updated.", "success")
    return redirect(url_for("products.products_list"))


@bp.post("/products/<int:product_id>/delete")
@require_admin
def products_delete_post(product_id: int):
    s = db_session()
    u = _current_user()
    product = get_product(s, u, product_id)
    code = product.code
    try:
        delete_product(s, u, product)
    except ConflictError as e:
        s.rollback()
        flash(e.message, "warning")
        return redirect(url_for("products.products_list"))
    s.commit()
    flash(f"Product {code} deleted.", "success")
    return redirect(url_for("products.products_list"))
