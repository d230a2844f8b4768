from alembic import op
import sqlalchemy as sa

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("settings", sa.JSON(), nullable=False),
    )

    op.create_table(
        "room_blackouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("room_id", sa.String(36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("room_id", "date", name="uq_room_blackouts_room_date"),
    )
    op.create_index("ix_room_blackouts_room_id", "room_blackouts", ["room_id"], unique=False)

    op.create_table(
        "reservation_locks",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("room_id", sa.String(36), nullable=False),
        sa.Column("holder_id", sa.String(64), nullable=False),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_reservation_locks_room_id", "reservation_locks", ["room_id"], unique=False)
    op.create_index("ix_reservation_locks_holder_id", "reservation_locks", ["holder_id"], unique=False)
    op.create_index("ix_reservation_locks_expires_at", "reservation_locks", ["expires_at"], unique=False)

    op.create_table(
        "lock_nights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "lock_id",
            sa.String(36),
            sa.ForeignKey("reservation_locks.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("room_id", sa.String(36), nullable=False),
        sa.Column("night", sa.Date(), nullable=False),
        sa.UniqueConstraint("room_id", "night", name="uq_lock_nights_room_night"),
    )
    op.create_index("ix_lock_nights_lock_id", "lock_nights", ["lock_id"], unique=False)

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("room_id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("guest_count", sa.Integer(), nullable=False),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("is_draft", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_evidence_url", sa.Text(), nullable=True),
        sa.Column("payment_verified_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_reference", sa.String(), nullable=True),
        sa.Column("verification_payload", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
    )
    op.create_index("ix_bookings_tenant_id", "bookings", ["tenant_id"], unique=False)
    op.create_index("ix_bookings_room_id", "bookings", ["room_id"], unique=False)
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"], unique=False)
    op.create_index("ix_bookings_status", "bookings", ["status"], unique=False)

    op.create_table(
        "booking_nights",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "booking_id",
            sa.String(36),
            sa.ForeignKey("bookings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("room_id", sa.String(36), nullable=False),
        sa.Column("night", sa.Date(), nullable=False),
        sa.UniqueConstraint("room_id", "night", name="uq_booking_nights_room_night"),
    )
    op.create_index("ix_booking_nights_booking_id", "booking_nights", ["booking_id"], unique=False)

    op.create_table(
        "payment_evidence",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("content_hash", sa.String(64), nullable=False, unique=True),
        sa.Column("external_reference", sa.String(), nullable=True, unique=True),
        sa.Column("booking_id", sa.String(36), sa.ForeignKey("bookings.id"), nullable=False),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("evidence_url", sa.Text(), nullable=True),
        sa.Column("verified_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("verifier_payload", sa.JSON(), nullable=True),
    )
    op.create_index("ix_payment_evidence_booking_id", "payment_evidence", ["booking_id"], unique=False)
    op.create_index("ix_payment_evidence_tenant_id", "payment_evidence", ["tenant_id"], unique=False)

    op.create_table(
        "upload_tokens",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("token", sa.String(64), nullable=False, unique=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(36), nullable=False),
        sa.Column("room_id", sa.String(36), nullable=False),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("guest_count", sa.Integer(), nullable=False),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_uploaded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("slip_url", sa.Text(), nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("slip_image", sa.LargeBinary(), nullable=True),
        sa.Column("slip_content_type", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_upload_tokens_user_id", "upload_tokens", ["user_id"], unique=False)
    op.create_index("ix_upload_tokens_expires_at", "upload_tokens", ["expires_at"], unique=False)

    # second line of defence on Postgres; booking_nights already enforces this everywhere
    if op.get_bind().dialect.name == "postgresql":
        op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")
        op.execute(
            """
            ALTER TABLE bookings ADD CONSTRAINT ex_bookings_no_overlap
            EXCLUDE USING gist (
                room_id WITH =,
                daterange(check_in, check_out, '[)') WITH &&
            ) WHERE (status IN ('pending', 'awaiting_payment', 'confirmed'))
            """
        )


def downgrade():
    if op.get_bind().dialect.name == "postgresql":
        op.execute("ALTER TABLE bookings DROP CONSTRAINT IF EXISTS ex_bookings_no_overlap")

    op.drop_index("ix_upload_tokens_expires_at", table_name="upload_tokens")
    op.drop_index("ix_upload_tokens_user_id", table_name="upload_tokens")
    op.drop_table("upload_tokens")

    op.drop_index("ix_payment_evidence_tenant_id", table_name="payment_evidence")
    op.drop_index("ix_payment_evidence_booking_id", table_name="payment_evidence")
    op.drop_table("payment_evidence")

    op.drop_index("ix_booking_nights_booking_id", table_name="booking_nights")
    op.drop_table("booking_nights")

    op.drop_index("ix_bookings_status", table_name="bookings")
    op.drop_index("ix_bookings_user_id", table_name="bookings")
    op.drop_index("ix_bookings_room_id", table_name="bookings")
    op.drop_index("ix_bookings_tenant_id", table_name="bookings")
    op.drop_table("bookings")

    op.drop_index("ix_lock_nights_lock_id", table_name="lock_nights")
    op.drop_table("lock_nights")

    op.drop_index("ix_reservation_locks_expires_at", table_name="reservation_locks")
    op.drop_index("ix_reservation_locks_holder_id", table_name="reservation_locks")
    op.drop_index("ix_reservation_locks_room_id", table_name="reservation_locks")
    op.drop_table("reservation_locks")

    op.drop_index("ix_room_blackouts_room_id", table_name="room_blackouts")
    op.drop_table("room_blackouts")

    op.drop_table("tenants")
