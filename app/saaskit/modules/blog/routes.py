from __future__ import annotations

from flask import Blueprint, abort, g, jsonify, render_template, request

from app.saaskit.db import db_session
from app.saaskit.errors import NotFoundError
from app.saaskit.extensions import POST_ACTION_LIMIT, limiter, post_rate_key
from app.saaskit.modules.blog.service import (
    LANGUAGES,
    get_post_by_slug,
    like_post,
    list_categories,
    list_published_posts,
    view_post,
)
from app.saaskit.pagination import action_error, action_ok, parse_page_args
from app.saaskit.utils import page_url_builder

bp = Blueprint("blog", __name__)


def _language() -> str:
    lang = (request.args.get("lang") or "").strip()
    if lang in LANGUAGES:
        return lang
    return request.accept_languages.best_match(LANGUAGES) or "fr"


@bp.get("/blog")
def post_list():
    s = db_session()
    language = _language()
    page, limit = parse_page_args(request.args, default_limit=10, max_limit=50)
    category_id = request.args.get("category", type=int)
    hashtag = (request.args.get("tag") or "").strip() or None
    result = list_published_posts(s, language, category_id, hashtag, page, limit)
    return render_template(
        "blog/list.html",
        page_obj=result,
        language=language,
        categories=list_categories(s),
        category_id=category_id,
        hashtag=hashtag,
        build_url=page_url_builder("blog.post_list"),
    )


@bp.get("/blog/<slug>")
def post_detail(slug: str):
    try:
        post, translation = get_post_by_slug(db_session(), slug, getattr(g, "current_user", None))
    except NotFoundError:
        abort(404)
    return render_template("blog/detail.html", post=post, t=translation)


@bp.post("/blog/<int:post_id>/like")
@limiter.limit(POST_ACTION_LIMIT, key_func=post_rate_key)
def post_like(post_id: int):
    s = db_session()
    try:
        count = like_post(s, post_id)
    except NotFoundError as e:
        return jsonify(action_error(e.message)), 404
    s.commit()
    return jsonify(action_ok({"nb_like": count}))


@bp.post("/blog/<int:post_id>/view")
@limiter.limit(POST_ACTION_LIMIT, key_func=post_rate_key)
def post_view(post_id: int):
    s = db_session()
    try:
        count = view_post(s, post_id)
    except NotFoundError as e:
        return jsonify(action_error(e.message)), 404
    s.commit()
    return jsonify(action_ok({"nb_view": count}))
