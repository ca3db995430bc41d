from __future__ import annotations

from flask import Blueprint, abort, flash, redirect, render_template, request, url_for

from app.saaskit.db import db_session
from app.saaskit.errors import NotFoundError, ValidationError
from app.saaskit.modules.blog.models import Category, Hashtag
from app.saaskit.modules.blog.service import (
    BULK_ACTIONS,
    LANGUAGES,
    POST_STATUSES,
    archive_post,
    bulk_post_action,
    create_category,
    create_hashtag,
    create_post,
    delete_category,
    delete_hashtag,
    delete_post,
    get_post,
    list_categories,
    list_hashtags,
    list_posts_admin,
    post_stats,
    publish_post,
    unpublish_post,
    update_category,
    update_post,
)
from app.saaskit.pagination import parse_page_args
from app.saaskit.rbac import require_permission
from app.saaskit.utils import current_user, flash_service_error, form_payload, page_url_builder

bp = Blueprint("blog_admin", __name__)

TRANSLATION_FIELDS = ("title", "slug", "content", "description", "meta_title", "meta_description")


def _post_payload_from_form() -> dict:
    """Form fields are suffixed by language: title_fr, slug_en, ..."""
    translations = []
    for lang in LANGUAGES:
        if not (request.form.get(f"title_{lang}") or "").strip():
            continue
        t = {"language": lang}
        for field in TRANSLATION_FIELDS:
            t[field] = request.form.get(f"{field}_{lang}") or ""
        translations.append(t)
    payload = form_payload("status", "category_id", "image", "hashtags")
    payload["translations"] = translations
    return payload


def _post_or_404(post_id: int):
    try:
        return get_post(db_session(), post_id)
    except NotFoundError:
        abort(404)


# ---------- Posts ----------
@bp.get("/blog")
@require_permission("blog.manage")
def post_list():
    s = db_session()
    page, limit = parse_page_args(request.args, default_limit=20)
    filters = {k: request.args.get(k) for k in ("status", "category_id", "q") if request.args.get(k)}
    if not str(filters.get("category_id", "0")).isdigit():
        filters.pop("category_id")
    return render_template(
        "admin/blog/list.html",
        page_obj=list_posts_admin(s, filters, page, limit),
        filters=filters,
        stats=post_stats(s),
        statuses=POST_STATUSES,
        categories=list_categories(s),
        bulk_actions=BULK_ACTIONS,
        build_url=page_url_builder("blog_admin.post_list"),
    )


@bp.get("/blog/new")
@require_permission("blog.manage")
def post_new_get():
    s = db_session()
    return render_template(
        "admin/blog/form.html",
        post=None,
        languages=LANGUAGES,
        statuses=POST_STATUSES,
        categories=list_categories(s),
    )


@bp.post("/blog/new")
@require_permission("blog.manage")
def post_new_post():
    s = db_session()
    try:
        post = create_post(s, _post_payload_from_form(), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("blog_admin.post_new_get"))
    s.commit()
    flash("Post created.", "success")
    return redirect(url_for("blog_admin.post_edit_get", post_id=post.id))


@bp.get("/blog/<int:post_id>/edit")
@require_permission("blog.manage")
def post_edit_get(post_id: int):
    s = db_session()
    return render_template(
        "admin/blog/form.html",
        post=_post_or_404(post_id),
        languages=LANGUAGES,
        statuses=POST_STATUSES,
        categories=list_categories(s),
    )


@bp.post("/blog/<int:post_id>/edit")
@require_permission("blog.manage")
def post_edit_post(post_id: int):
    s = db_session()
    post = _post_or_404(post_id)
    try:
        update_post(s, post, _post_payload_from_form(), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("blog_admin.post_edit_get", post_id=post_id))
    s.commit()
    flash("Post updated.", "success")
    return redirect(url_for("blog_admin.post_edit_get", post_id=post_id))


@bp.post("/blog/<int:post_id>/status")
@require_permission("blog.manage")
def post_status(post_id: int):
    s = db_session()
    post = _post_or_404(post_id)
    actions = {"publish": publish_post, "unpublish": unpublish_post, "archive": archive_post}
    action = (request.form.get("action") or "").strip()
    if action not in actions:
        flash("Unknown action.", "danger")
        return redirect(url_for("blog_admin.post_list"))
    actions[action](s, post, current_user())
    s.commit()
    flash(f"Post {post.status}.", "success")
    return redirect(url_for("blog_admin.post_list"))


@bp.post("/blog/<int:post_id>/delete")
@require_permission("blog.manage")
def post_delete(post_id: int):
    s = db_session()
    delete_post(s, _post_or_404(post_id), current_user())
    s.commit()
    flash("Post deleted.", "success")
    return redirect(url_for("blog_admin.post_list"))


@bp.post("/blog/bulk")
@require_permission("blog.manage")
def post_bulk():
    s = db_session()
    ids = [int(x) for x in request.form.getlist("post_ids") if str(x).isdigit()]
    try:
        count = bulk_post_action(s, ids, (request.form.get("action") or "").strip(), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("blog_admin.post_list"))
    s.commit()
    flash(f"{count} post(s) updated.", "success")
    return redirect(url_for("blog_admin.post_list"))


# ---------- Categories / hashtags ----------
@bp.get("/blog/categories")
@require_permission("blog.manage")
def categories():
    s = db_session()
    return render_template("admin/blog/categories.html", categories=list_categories(s), hashtags=list_hashtags(s))


@bp.post("/blog/categories")
@require_permission("blog.manage")
def category_create():
    s = db_session()
    try:
        create_category(s, form_payload("name", "description"), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("blog_admin.categories"))
    s.commit()
    flash("Category created.", "success")
    return redirect(url_for("blog_admin.categories"))


@bp.post("/blog/categories/<int:category_id>/edit")
@require_permission("blog.manage")
def category_edit(category_id: int):
    s = db_session()
    category = s.get(Category, category_id)
    if not category:
        abort(404)
    try:
        update_category(s, category, form_payload("name", "description"), current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("blog_admin.categories"))
    s.commit()
    flash("Category updated.", "success")
    return redirect(url_for("blog_admin.categories"))


@bp.post("/blog/categories/<int:category_id>/delete")
@require_permission("blog.manage")
def category_delete(category_id: int):
    s = db_session()
    category = s.get(Category, category_id)
    if not category:
        abort(404)
    delete_category(s, category, current_user())
    s.commit()
    flash("Category deleted.", "success")
    return redirect(url_for("blog_admin.categories"))


@bp.post("/blog/hashtags")
@require_permission("blog.manage")
def hashtag_create():
    s = db_session()
    try:
        create_hashtag(s, request.form.get("name") or "", current_user())
    except ValidationError as e:
        flash_service_error(e)
        return redirect(url_for("blog_admin.categories"))
    s.commit()
    flash("Hashtag created.", "success")
    return redirect(url_for("blog_admin.categories"))


@bp.post("/blog/hashtags/<int:hashtag_id>/delete")
@require_permission("blog.manage")
def hashtag_delete(hashtag_id: int):
    s = db_session()
    tag = s.get(Hashtag, hashtag_id)
    if not tag:
        abort(404)
    delete_hashtag(s, tag, current_user())
    s.commit()
    flash("Hashtag deleted.", "success")
    return redirect(url_for("blog_admin.categories"))
