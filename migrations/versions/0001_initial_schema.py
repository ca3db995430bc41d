"""Initial schema: accounts, organizations, projects, billing, blog, notifications, files.

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOW = sa.text("CURRENT_TIMESTAMP")


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=NOW)


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False, server_default=NOW)


def _create(insp, name: str, *columns, indexes: tuple = ()) -> None:
    existing: set[str] = set()
    if insp.has_table(name):
        existing = {i["name"] for i in insp.get_indexes(name)}
    else:
        op.create_table(name, *columns)
    for index_name, cols in indexes:
        if index_name not in existing:
            op.create_index(index_name, name, list(cols))


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    # ---------- Identity / RBAC ----------
    _create(
        insp,
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("image", sa.String(1024), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("banned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("ban_reason", sa.String(512), nullable=True),
        sa.Column("ban_expires", sa.DateTime(timezone=False), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("visibility", sa.String(16), nullable=False, server_default="private"),
        _created_at(),
        _updated_at(),
    )
    _create(
        insp,
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        _created_at(),
    )
    _create(
        insp,
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(128), nullable=False, unique=True),
        sa.Column("name", sa.String(128), nullable=False),
        _created_at(),
    )
    _create(
        insp,
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )
    _create(
        insp,
        "role_permissions",
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True),
    )
    _create(
        insp,
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        _created_at(),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("actor_user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )

    # ---------- Accounts ----------
    _create(
        insp,
        "user_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("theme", sa.String(16), nullable=False, server_default="system"),
        sa.Column("language", sa.String(8), nullable=False, server_default="fr"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="Europe/Paris"),
        sa.Column("enable_email_notifications", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("notification_channel", sa.String(16), nullable=False, server_default="email"),
        sa.Column("marketing_emails", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        _updated_at(),
    )
    _create(
        insp,
        "api_keys",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("prefix", sa.String(16), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=False), nullable=True),
        _created_at(),
        indexes=(("idx_api_keys_user", ("user_id",)),),
    )

    # ---------- Organizations ----------
    _create(
        insp,
        "organizations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("logo", sa.String(1024), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    _create(
        insp,
        "members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="member"),
        _created_at(),
        sa.UniqueConstraint("organization_id", "user_id", name="uq_members_org_user"),
        indexes=(("idx_members_user", ("user_id",)),),
    )
    _create(
        insp,
        "invitations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("role", sa.String(16), nullable=False, server_default="member"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("inviter_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=False), nullable=False),
        _created_at(),
        indexes=(
            ("idx_invitations_email", ("email",)),
            ("idx_invitations_org_status", ("organization_id", "status")),
        ),
    )

    # ---------- Projects ----------
    _create(
        insp,
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _created_at(),
        _updated_at(),
        indexes=(
            ("idx_projects_org", ("organization_id",)),
            ("idx_projects_created_by", ("created_by",)),
        ),
    )
    _create(
        insp,
        "tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="todo"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("assigned_to", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _created_at(),
        _updated_at(),
        indexes=(
            ("idx_tasks_project_status", ("project_id", "status")),
            ("idx_tasks_org", ("organization_id",)),
        ),
    )

    # ---------- Billing ----------
    _create(
        insp,
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.String(64), nullable=False, unique=True),
        sa.Column("plan_name", sa.String(128), nullable=False),
        sa.Column("price_id", sa.String(255), nullable=True),
        sa.Column("annual_discount_price_id", sa.String(255), nullable=True),
        sa.Column("limits", sa.JSON(), nullable=False),
        sa.Column("free_trial", sa.JSON(), nullable=True),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("yearly_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(8), nullable=False, server_default="EUR"),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_legacy", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        _created_at(),
        _updated_at(),
        indexes=(("idx_plans_status_order", ("status", "display_order")),),
    )
    _create(
        insp,
        "subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("plan", sa.String(64), nullable=False),
        sa.Column("reference_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_subscription_id", sa.String(255), nullable=True),
        sa.Column("stripe_checkout_session_id", sa.String(255), nullable=True),
        sa.Column("status", sa.String(32), nullable=False, server_default="incomplete"),
        sa.Column("period_start", sa.DateTime(timezone=False), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=False), nullable=True),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("seats", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("trial_start", sa.DateTime(timezone=False), nullable=True),
        sa.Column("trial_end", sa.DateTime(timezone=False), nullable=True),
        _created_at(),
        _updated_at(),
        indexes=(
            ("idx_subscriptions_reference", ("reference_id",)),
            ("idx_subscriptions_stripe", ("stripe_subscription_id",)),
        ),
    )

    # ---------- Blog ----------
    _create(
        insp,
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=True),
        _created_at(),
    )
    _create(
        insp,
        "hashtags",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(64), nullable=False, unique=True),
        _created_at(),
    )
    _create(
        insp,
        "posts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("author_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id", ondelete="SET NULL"), nullable=True),
        sa.Column("image", sa.String(1024), nullable=True),
        sa.Column("nb_view", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("nb_like", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("published_at", sa.DateTime(timezone=False), nullable=True),
        _created_at(),
        _updated_at(),
        indexes=(
            ("idx_posts_status", ("status",)),
            ("idx_posts_author", ("author_id",)),
        ),
    )
    _create(
        insp,
        "post_translations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("post_id", sa.Integer(), sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False),
        sa.Column("language", sa.String(8), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), nullable=False, unique=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("meta_title", sa.String(200), nullable=True),
        sa.Column("meta_description", sa.String(500), nullable=True),
        sa.UniqueConstraint("post_id", "language", name="uq_post_translation_language"),
    )
    _create(
        insp,
        "post_hashtags",
        sa.Column("post_id", sa.Integer(), sa.ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("hashtag_id", sa.Integer(), sa.ForeignKey("hashtags.id", ondelete="CASCADE"), primary_key=True),
    )

    # ---------- Notifications / files ----------
    _create(
        insp,
        "notifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        indexes=(("idx_notifications_user_read", ("user_id", "read")),),
    )
    _create(
        insp,
        "files",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("organization_id", sa.Integer(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=True),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("storage_key", sa.String(1024), nullable=False, unique=True),
        sa.Column("original_filename", sa.String(255), nullable=False),
        sa.Column("content_type", sa.String(128), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(64), nullable=False),
        _created_at(),
        indexes=(
            ("idx_files_entity", ("entity_type", "entity_id")),
            ("idx_files_user", ("user_id",)),
        ),
    )


def downgrade() -> None:
    for table in (
        "files",
        "notifications",
        "post_hashtags",
        "post_translations",
        "posts",
        "hashtags",
        "categories",
        "subscriptions",
        "subscription_plans",
        "tasks",
        "projects",
        "invitations",
        "members",
        "organizations",
        "api_keys",
        "user_settings",
        "audit_events",
        "role_permissions",
        "user_roles",
        "permissions",
        "roles",
        "users",
    ):
        op.drop_table(table)
