from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, update

from app.saaskit.abilities import DELETE, UPDATE, user_can
from app.saaskit.audit import record_event
from app.saaskit.errors import AuthorizationError, NotFoundError, ValidationError
from app.saaskit.facades import logged_service
from app.saaskit.modules.blog.models import Category, Hashtag, Post, PostHashtag, PostTranslation
from app.saaskit.pagination import Page, paginate
from app.saaskit.rbac import user_has_permission

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.saaskit.models import User


BLOG_PERMISSION = "blog.manage"
LANGUAGES = ("fr", "en", "es")
POST_STATUSES = ("draft", "published", "archived")
BULK_ACTIONS = ("publish", "unpublish", "archive", "delete")
SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def generate_slug(text: str) -> str:
    """'Été à Paris !' -> 'ete-a-paris'"""
    value = unicodedata.normalize("NFD", (text or "").lower())
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = re.sub(r"[^a-z0-9\s-]", "", value)
    value = re.sub(r"\s+", "-", value.strip())
    value = re.sub(r"-+", "-", value)
    return value.strip("-")


def can_manage_blog(user: "User | None") -> bool:
    return user_has_permission(user, BLOG_PERMISSION)


def _ensure_post_access(s: "Session", user: "User", post: Post, action: str) -> None:
    if can_manage_blog(user):
        return
    if not user_can(s, user, action, "Post", {"author_id": post.author_id, "status": post.status}):
        raise AuthorizationError()


# ---------- Validation ----------
def _normalize_translations(payload: dict) -> list[dict[str, Any]]:
    out = []
    for raw in payload.get("translations") or []:
        t = {k: (raw.get(k) or "").strip() for k in ("language", "title", "slug", "content", "description", "meta_title", "meta_description")}
        if not t["slug"] and t["title"]:
            t["slug"] = generate_slug(t["title"])
        out.append(t)
    return out


def validate_post_payload(s: "Session", payload: dict, post_id: int | None = None) -> tuple[list[dict[str, Any]], list[str]]:
    """Returns (normalized translations, errors)."""
    errors: list[str] = []
    status = (payload.get("status") or "draft").strip()
    if status not in POST_STATUSES:
        errors.append(f"Invalid status. Must be one of: {', '.join(POST_STATUSES)}")

    translations = _normalize_translations(payload)
    if not translations:
        errors.append("At least one translation is required.")

    seen_languages: set[str] = set()
    seen_slugs: set[str] = set()
    for t in translations:
        lang = t["language"]
        if lang not in LANGUAGES:
            errors.append(f"Invalid language '{lang}'. Must be one of: {', '.join(LANGUAGES)}")
        elif lang in seen_languages:
            errors.append(f"Duplicate translation for '{lang}'.")
        seen_languages.add(lang)

        if not (1 <= len(t["title"]) <= 200):
            errors.append(f"[{lang}] Title must be between 1 and 200 characters.")
        slug = t["slug"]
        if not slug or len(slug) > 100 or not SLUG_RE.match(slug):
            errors.append(f"[{lang}] Slug must be lowercase words separated by dashes (max 100).")
        elif slug in seen_slugs:
            errors.append(f"[{lang}] Slug '{slug}' is used twice.")
        else:
            q = s.query(PostTranslation.id).filter(PostTranslation.slug == slug)
            if post_id is not None:
                q = q.filter(PostTranslation.post_id != post_id)
            if q.first() is not None:
                errors.append(f"[{lang}] Slug '{slug}' is already in use.")
        seen_slugs.add(slug)

    category_id = payload.get("category_id")
    if category_id not in (None, ""):
        try:
            if s.get(Category, int(category_id)) is None:
                errors.append("Category not found.")
        except (TypeError, ValueError):
            errors.append("Invalid category.")
    return translations, errors


def _parse_hashtags(raw: Any) -> list[str]:
    if isinstance(raw, str):
        raw = raw.replace(",", " ").split()
    names = []
    for item in raw or []:
        name = generate_slug(str(item).lstrip("#"))[:64]
        if name and name not in names:
            names.append(name)
    return names


def _resolve_hashtags(s: "Session", names: list[str]) -> list[Hashtag]:
    tags = []
    for name in names:
        tag = s.query(Hashtag).filter(Hashtag.name == name).one_or_none()
        if not tag:
            tag = Hashtag(name=name)
            s.add(tag)
            s.flush()
        tags.append(tag)
    return tags


def _apply_post_fields(s: "Session", post: Post, payload: dict, translations: list[dict[str, Any]]) -> None:
    status = (payload.get("status") or post.status or "draft").strip()
    if status == "published" and post.published_at is None:
        post.published_at = datetime.utcnow()
    post.status = status
    category_id = payload.get("category_id")
    post.category_id = int(category_id) if category_id not in (None, "") else None
    post.image = (payload.get("image") or "").strip() or None
    if "hashtags" in payload:
        post.hashtags = _resolve_hashtags(s, _parse_hashtags(payload.get("hashtags")))

    existing = {t.language: t for t in post.translations}
    keep = set()
    for t in translations:
        row = existing.get(t["language"])
        if row is None:
            row = PostTranslation(language=t["language"])
            post.translations.append(row)
        row.title = t["title"]
        row.slug = t["slug"]
        for field in ("content", "description", "meta_title", "meta_description"):
            setattr(row, field, t[field] or None)
        keep.add(t["language"])
    for lang, row in existing.items():
        if lang not in keep:
            post.translations.remove(row)


# ---------- Posts ----------
@logged_service("blog")
def create_post(s: "Session", payload: dict, user: "User") -> Post:
    if not can_manage_blog(user):
        raise AuthorizationError()
    translations, errors = validate_post_payload(s, payload)
    if errors:
        raise ValidationError(errors)
    post = Post(author_id=user.id)
    s.add(post)
    _apply_post_fields(s, post, payload, translations)
    s.flush()
    record_event(s, actor=user, action="post.create", entity_type="Post", entity_id=post.id, metadata={"status": post.status, "languages": [t["language"] for t in translations]})
    return post


def get_post(s: "Session", post_id: int) -> Post:
    post = s.get(Post, post_id)
    if not post:
        raise NotFoundError("Post not found")
    return post


@logged_service("blog")
def update_post(s: "Session", post: Post, payload: dict, user: "User") -> Post:
    _ensure_post_access(s, user, post, UPDATE)
    translations, errors = validate_post_payload(s, payload, post_id=post.id)
    if errors:
        raise ValidationError(errors)
    before = post.status
    _apply_post_fields(s, post, payload, translations)
    post.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="post.edit", entity_type="Post", entity_id=post.id, metadata={"status": {"old": before, "new": post.status}})
    return post


@logged_service("blog")
def delete_post(s: "Session", post: Post, user: "User") -> None:
    _ensure_post_access(s, user, post, DELETE)
    record_event(s, actor=user, action="post.delete", entity_type="Post", entity_id=post.id)
    s.delete(post)


def _set_status(s: "Session", post: Post, status: str, user: "User") -> Post:
    _ensure_post_access(s, user, post, UPDATE)
    old = post.status
    post.status = status
    if status == "published" and post.published_at is None:
        post.published_at = datetime.utcnow()
    post.updated_at = datetime.utcnow()
    record_event(s, actor=user, action="post.status", entity_type="Post", entity_id=post.id, metadata={"old": old, "new": status})
    return post


@logged_service("blog")
def publish_post(s: "Session", post: Post, user: "User") -> Post:
    return _set_status(s, post, "published", user)


@logged_service("blog")
def unpublish_post(s: "Session", post: Post, user: "User") -> Post:
    return _set_status(s, post, "draft", user)


@logged_service("blog")
def archive_post(s: "Session", post: Post, user: "User") -> Post:
    return _set_status(s, post, "archived", user)


@logged_service("blog")
def bulk_post_action(s: "Session", post_ids: list[int], action: str, user: "User") -> int:
    """Apply `action` to each post; returns how many were affected."""
    if action not in BULK_ACTIONS:
        raise ValidationError(f"Invalid action. Must be one of: {', '.join(BULK_ACTIONS)}")
    if not can_manage_blog(user):
        raise AuthorizationError()
    posts = s.query(Post).filter(Post.id.in_(post_ids or [])).all() if post_ids else []
    for post in posts:
        if action == "publish":
            _set_status(s, post, "published", user)
        elif action == "unpublish":
            _set_status(s, post, "draft", user)
        elif action == "archive":
            _set_status(s, post, "archived", user)
        else:
            record_event(s, actor=user, action="post.delete", entity_type="Post", entity_id=post.id, reason="bulk")
            s.delete(post)
    return len(posts)


def _increment(s: "Session", post_id: int, column) -> int:
    result = s.execute(
        update(Post)
        .where(Post.id == post_id, Post.status == "published")
        .values({column: column + 1})
        .execution_options(synchronize_session=False)
    )
    if not result.rowcount:
        raise NotFoundError("Post not found")
    return s.query(column).filter(Post.id == post_id).scalar()


@logged_service("blog")
def like_post(s: "Session", post_id: int) -> int:
    return _increment(s, post_id, Post.nb_like)


@logged_service("blog")
def view_post(s: "Session", post_id: int) -> int:
    return _increment(s, post_id, Post.nb_view)


def get_post_by_slug(s: "Session", slug: str, user: "User | None" = None) -> tuple[Post, PostTranslation]:
    t = s.query(PostTranslation).filter(PostTranslation.slug == slug).one_or_none()
    if not t:
        raise NotFoundError("Post not found")
    post = t.post
    if post.status != "published" and not can_manage_blog(user):
        if user is None or post.author_id != user.id:
            raise NotFoundError("Post not found")
    return post, t


def list_published_posts(
    s: "Session",
    language: str | None = None,
    category_id: int | None = None,
    hashtag: str | None = None,
    page: int = 1,
    limit: int = 10,
) -> Page:
    q = s.query(Post).filter(Post.status == "published")
    if language:
        q = q.filter(Post.translations.any(PostTranslation.language == language))
    if category_id:
        q = q.filter(Post.category_id == category_id)
    if hashtag:
        q = q.join(PostHashtag, PostHashtag.post_id == Post.id).join(Hashtag, Hashtag.id == PostHashtag.hashtag_id).filter(Hashtag.name == hashtag)
    q = q.order_by(Post.published_at.desc(), Post.id.desc())
    return paginate(q, page, limit)


def list_posts_admin(s: "Session", filters: dict | None = None, page: int = 1, limit: int = 20) -> Page:
    filters = filters or {}
    q = s.query(Post)
    status = (filters.get("status") or "").strip()
    if status in POST_STATUSES:
        q = q.filter(Post.status == status)
    if filters.get("category_id"):
        q = q.filter(Post.category_id == int(filters["category_id"]))
    if filters.get("author_id"):
        q = q.filter(Post.author_id == int(filters["author_id"]))
    search = (filters.get("q") or "").strip()
    if search:
        like = f"%{search}%"
        q = q.filter(Post.translations.any(PostTranslation.title.ilike(like)))
    q = q.order_by(Post.updated_at.desc(), Post.id.desc())
    return paginate(q, page, limit)


def post_stats(s: "Session") -> dict[str, int]:
    counts = dict(s.query(Post.status, func.count(Post.id)).group_by(Post.status).all())
    views, likes = s.query(func.coalesce(func.sum(Post.nb_view), 0), func.coalesce(func.sum(Post.nb_like), 0)).one()
    return {
        "total": sum(counts.values()),
        "published": counts.get("published", 0),
        "draft": counts.get("draft", 0),
        "archived": counts.get("archived", 0),
        "total_views": int(views),
        "total_likes": int(likes),
    }


# ---------- Categories / hashtags ----------
def list_categories(s: "Session") -> list[Category]:
    return s.query(Category).order_by(Category.name.asc()).all()


def list_hashtags(s: "Session") -> list[Hashtag]:
    return s.query(Hashtag).order_by(Hashtag.name.asc()).all()


def _validate_category(s: "Session", payload: dict, category_id: int | None = None) -> list[str]:
    errors = []
    name = (payload.get("name") or "").strip()
    if not (1 <= len(name) <= 100):
        errors.append("Name must be between 1 and 100 characters.")
    else:
        q = s.query(Category.id).filter(func.lower(Category.name) == name.lower())
        if category_id is not None:
            q = q.filter(Category.id != category_id)
        if q.first() is not None:
            errors.append("A category with this name already exists.")
    if len((payload.get("description") or "").strip()) > 500:
        errors.append("Description must be at most 500 characters.")
    return errors


@logged_service("blog")
def create_category(s: "Session", payload: dict, user: "User") -> Category:
    if not can_manage_blog(user):
        raise AuthorizationError()
    errors = _validate_category(s, payload)
    if errors:
        raise ValidationError(errors)
    c = Category(name=payload["name"].strip(), description=(payload.get("description") or "").strip() or None)
    s.add(c)
    s.flush()
    record_event(s, actor=user, action="category.create", entity_type="Category", entity_id=c.id, metadata={"name": c.name})
    return c


@logged_service("blog")
def update_category(s: "Session", category: Category, payload: dict, user: "User") -> Category:
    if not can_manage_blog(user):
        raise AuthorizationError()
    errors = _validate_category(s, payload, category.id)
    if errors:
        raise ValidationError(errors)
    category.name = payload["name"].strip()
    category.description = (payload.get("description") or "").strip() or None
    record_event(s, actor=user, action="category.edit", entity_type="Category", entity_id=category.id)
    return category


@logged_service("blog")
def delete_category(s: "Session", category: Category, user: "User") -> None:
    if not can_manage_blog(user):
        raise AuthorizationError()
    s.query(Post).filter(Post.category_id == category.id).update({Post.category_id: None}, synchronize_session=False)
    record_event(s, actor=user, action="category.delete", entity_type="Category", entity_id=category.id, metadata={"name": category.name})
    s.delete(category)


@logged_service("blog")
def create_hashtag(s: "Session", name: str, user: "User") -> Hashtag:
    if not can_manage_blog(user):
        raise AuthorizationError()
    names = _parse_hashtags([name])
    if not names:
        raise ValidationError("Hashtag name is required.")
    if s.query(Hashtag.id).filter(Hashtag.name == names[0]).first() is not None:
        raise ValidationError("This hashtag already exists.")
    tag = Hashtag(name=names[0])
    s.add(tag)
    s.flush()
    record_event(s, actor=user, action="hashtag.create", entity_type="Hashtag", entity_id=tag.id, metadata={"name": tag.name})
    return tag


@logged_service("blog")
def delete_hashtag(s: "Session", hashtag: Hashtag, user: "User") -> None:
    if not can_manage_blog(user):
        raise AuthorizationError()
    s.query(PostHashtag).filter(PostHashtag.hashtag_id == hashtag.id).delete(synchronize_session=False)
    record_event(s, actor=user, action="hashtag.delete", entity_type="Hashtag", entity_id=hashtag.id, metadata={"name": hashtag.name})
    s.delete(hashtag)
