# Overview: Service-layer operations for categories; enforces the category tree invariants.

"""
Category Hierarchy Invariants (authoritative)

- Categories form a forest through parent_id. The parent graph is acyclic:
  a category is never its own ancestor.
- Names are unique across all categories (exact, case-sensitive match).
- sort_order orders siblings. New categories without one are appended
  after the highest sibling: max(sibling sort_order, 0) + 1.
- A category can only be deleted when it has no subcategories and no products.

Tree reads use an arena + index: every category is loaded into a dict keyed
by id, and children are looked up through a side index keyed by parent_id.
Nothing in the ORM holds child collections, so reparenting only ever touches
one column on one row.
"""

from __future__ import annotations

from collections import defaultdict

from flask import current_app

from ..errors import (
    DuplicateNameError,
    HasChildrenError,
    HasProductsError,
    InvalidOperationError,
    NotFoundError,
)
from ..extensions import db
from ..models import Category, Product
from .concurrency import run_with_retry

CATEGORY_MUTABLE_FIELDS = {"name", "description", "parent_id", "sort_order", "is_active"}


def _sort_key(category: Category) -> tuple[int, int]:
    return (category.sort_order or 0, category.id or 0)


def _require_category(category_id: int, *, label: str = "Category") -> Category:
    category = db.session.get(Category, category_id)
    if category is None:
        raise NotFoundError(label, category_id)
    return category


def _children_index() -> dict[int | None, list[Category]]:
    index: dict[int | None, list[Category]] = defaultdict(list)
    for category in db.session.query(Category).all():
        index[category.parent_id].append(category)
    for siblings in index.values():
        siblings.sort(key=_sort_key)
    return index


def _is_descendant(candidate_id: int, ancestor_id: int, index: dict) -> bool:
    """
    Depth-first walk of ancestor_id's subtree looking for candidate_id.

    No visited set: the tree is acyclic by invariant, and this check is what
    keeps it that way.
    """
    for child in index.get(ancestor_id, []):
        if child.id == candidate_id or _is_descendant(candidate_id, child.id, index):
            return True
    return False


def _check_reparent(category_id: int, new_parent_id: int | None) -> None:
    """Raise unless category_id may be placed under new_parent_id."""
    if new_parent_id is None:
        return
    if new_parent_id == category_id:
        raise InvalidOperationError("Category cannot be its own parent")
    _require_category(new_parent_id, label="Parent category")
    if _is_descendant(new_parent_id, category_id, _children_index()):
        raise InvalidOperationError("Cannot move category to its own descendant")


def _next_sort_order(parent_id: int | None) -> int:
    current_max = (
        db.session.query(db.func.max(Category.sort_order))
        .filter(Category.parent_id.is_(None) if parent_id is None else Category.parent_id == parent_id)
        .scalar()
    )
    return max(current_max or 0, 0) + 1


def exists_by_name(name: str) -> bool:
    return db.session.query(Category.id).filter(Category.name == name).first() is not None


def get_category(category_id: int) -> Category | None:
    return db.session.get(Category, category_id)


def get_category_by_name(name: str) -> Category | None:
    return db.session.query(Category).filter(Category.name == name).first()


def list_categories() -> list[Category]:
    return db.session.query(Category).order_by(Category.sort_order.asc(), Category.id.asc()).all()


def get_root_categories() -> list[Category]:
    return (
        db.session.query(Category)
        .filter(Category.parent_id.is_(None))
        .order_by(Category.sort_order.asc(), Category.id.asc())
        .all()
    )


def get_subcategories(parent_id: int) -> list[Category]:
    return (
        db.session.query(Category)
        .filter(Category.parent_id == parent_id)
        .order_by(Category.sort_order.asc(), Category.id.asc())
        .all()
    )


def get_active_categories() -> list[Category]:
    return (
        db.session.query(Category)
        .filter(Category.is_active.is_(True))
        .order_by(Category.sort_order.asc(), Category.id.asc())
        .all()
    )


def search_categories(keyword: str) -> list[Category]:
    """Substring match on name or description (case-insensitive)."""
    pattern = f"%{keyword}%"
    return (
        db.session.query(Category)
        .filter(db.or_(Category.name.ilike(pattern), Category.description.ilike(pattern)))
        .order_by(Category.name.asc())
        .all()
    )


def get_product_count(category_id: int) -> int:
    return db.session.query(Product).filter(Product.category_id == category_id).count()


def get_category_tree() -> list[dict]:
    """
    Roots in sort order, each with a nested "children" list.

    Read-only: sort_order and parent_id are reported as stored.
    """
    index = _children_index()

    def _node(category: Category) -> dict:
        data = category.to_dict()
        data["children"] = [_node(child) for child in index.get(category.id, [])]
        return data

    return [_node(root) for root in index.get(None, [])]


def create_category(patch: dict) -> Category:
    """
    Create a category.

    Raises:
        DuplicateNameError: name already used by any category
        NotFoundError: parent_id given but unresolved
    """
    name = patch.get("name")
    current_app.logger.info("Creating new category: %s", name)

    def _op():
        if not name:
            raise InvalidOperationError("Category name is required")
        if exists_by_name(name):
            raise DuplicateNameError(f"Category name already exists: {name}")

        parent_id = patch.get("parent_id")
        if parent_id is not None:
            _require_category(parent_id, label="Parent category")

        category = Category()
        for key, value in patch.items():
            if key in CATEGORY_MUTABLE_FIELDS:
                setattr(category, key, value)

        if category.sort_order is None:
            category.sort_order = _next_sort_order(parent_id)
        if category.is_active is None:
            category.is_active = True

        db.session.add(category)
        db.session.commit()
        return category

    category = run_with_retry(_op)
    current_app.logger.info("Category created successfully with ID: %s", category.id)
    return category


def update_category(category_id: int, patch: dict) -> Category:
    """
    Apply a partial update. Only keys present in patch are written.

    Reparenting (parent_id in patch) uses the same guards as move_category().
    """
    current_app.logger.info("Updating category with ID: %s", category_id)

    def _op():
        category = _require_category(category_id)

        new_name = patch.get("name")
        if "name" in patch:
            if not new_name:
                raise InvalidOperationError("Category name is required")
            if new_name != category.name and exists_by_name(new_name):
                raise DuplicateNameError(f"Category name already exists: {new_name}")

        if "parent_id" in patch:
            _check_reparent(category_id, patch["parent_id"])

        for key, value in patch.items():
            if key in CATEGORY_MUTABLE_FIELDS:
                setattr(category, key, value)

        db.session.commit()
        return category

    category = run_with_retry(_op)
    current_app.logger.info("Category updated successfully with ID: %s", category_id)
    return category


def delete_category(category_id: int) -> None:
    current_app.logger.info("Deleting category with ID: %s", category_id)

    def _op():
        category = _require_category(category_id)

        has_children = (
            db.session.query(Category.id).filter(Category.parent_id == category_id).first() is not None
        )
        if has_children:
            raise HasChildrenError(
                "Cannot delete category with subcategories. Please delete or move subcategories first."
            )

        if get_product_count(category_id) > 0:
            raise HasProductsError(
                "Cannot delete category with products. Please move or delete products first."
            )

        db.session.delete(category)
        db.session.commit()

    run_with_retry(_op)
    current_app.logger.info("Category deleted successfully with ID: %s", category_id)


def move_category(category_id: int, new_parent_id: int | None) -> Category:
    """Reparent a category; None promotes it to a root."""
    current_app.logger.info("Moving category ID: %s to parent ID: %s", category_id, new_parent_id)

    def _op():
        category = _require_category(category_id)
        _check_reparent(category_id, new_parent_id)
        category.parent_id = new_parent_id
        db.session.commit()
        return category

    category = run_with_retry(_op)
    current_app.logger.info("Category moved successfully with ID: %s", category_id)
    return category


def update_category_sort(category_id: int, sort_order: int) -> Category:
    def _op():
        category = _require_category(category_id)
        category.sort_order = sort_order
        db.session.commit()
        return category

    return run_with_retry(_op)


def toggle_category_status(category_id: int, active: bool) -> Category:
    current_app.logger.info("Toggling category status for ID: %s to active: %s", category_id, active)

    def _op():
        category = _require_category(category_id)
        category.is_active = active
        db.session.commit()
        return category

    return run_with_retry(_op)


def reorder_categories(category_ids: list[int]) -> list[Category]:
    """
    Assign sort_order = position + 1 following the given id order.

    Parents are not checked, so ids from different sibling groups may be
    mixed. Every id is resolved before anything is written; the first
    unresolved id raises NotFoundError and no sort order changes.
    """
    current_app.logger.info("Reordering %s categories", len(category_ids))

    def _op():
        found = {
            c.id: c
            for c in db.session.query(Category).filter(Category.id.in_(category_ids)).all()
        }
        ordered = []
        for category_id in category_ids:
            category = found.get(category_id)
            if category is None:
                raise NotFoundError("Category", category_id)
            ordered.append(category)

        for position, category in enumerate(ordered, start=1):
            category.sort_order = position

        db.session.commit()
        return ordered

    ordered = run_with_retry(_op)
    current_app.logger.info("Categories reordered successfully")
    return ordered
