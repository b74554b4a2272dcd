"""Table definitions.

Queries are written as plain SQL against these tables; the metadata here is the
single source for `create_tables()` and the Alembic migrations.
"""
import sqlalchemy as sa

metadata = sa.MetaData()

profiles = sa.Table(
    "profiles",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("email", sa.String(255), nullable=True),
    sa.Column("full_name", sa.String(255), nullable=True),
    sa.Column("avatar_url", sa.Text(), nullable=True),
    sa.Column("rating", sa.Float(), nullable=False, server_default="0"),
    sa.Column("total_trips", sa.Integer(), nullable=False, server_default="0"),
    sa.Column("push_token", sa.Text(), nullable=True),  # FCM registration token
    sa.Column("platform", sa.String(16), nullable=True),  # 'ios' | 'android'
    sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.current_timestamp()),
)

trips = sa.Table(
    "trips",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("creator_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("description", sa.Text(), nullable=True),
    sa.Column("pickup_location", sa.Text(), nullable=False),
    sa.Column("pickup_lat", sa.Float(), nullable=False),
    sa.Column("pickup_lng", sa.Float(), nullable=False),
    sa.Column("dropoff_location", sa.Text(), nullable=False),
    sa.Column("dropoff_lat", sa.Float(), nullable=False),
    sa.Column("dropoff_lng", sa.Float(), nullable=False),
    sa.Column("departure_time", sa.DateTime(), nullable=False),
    sa.Column("service_type", sa.String(16), nullable=False),  # 'uber' | 'bolt' | 'lyft' | 'other'
    sa.Column("total_seats", sa.Integer(), nullable=False),
    sa.Column("available_seats", sa.Integer(), nullable=False),
    sa.Column("estimated_cost", sa.Float(), nullable=True),
    sa.Column("status", sa.String(16), nullable=False, server_default="active"),
    sa.Column("created_at", sa.DateTime(), nullable=False),
    sa.Column("updated_at", sa.DateTime(), nullable=False),
    sa.CheckConstraint("available_seats >= 0 AND available_seats <= total_seats", name="ck_trips_seat_bounds"),
    sa.Index("idx_trips_creator", "creator_id"),
    sa.Index("idx_trips_status_departure", "status", "departure_time"),
)

trip_participants = sa.Table(
    "trip_participants",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("seats_requested", sa.Integer(), nullable=False, server_default="1"),
    # 'pending' | 'accepted' | 'rejected' | 'left' | 'removed'
    sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
    sa.Column("payment_status", sa.String(16), nullable=False, server_default="unpaid"),
    sa.Column("joined_at", sa.DateTime(), nullable=False),
    sa.Column("left_at", sa.DateTime(), nullable=True),
    sa.CheckConstraint("seats_requested >= 1", name="ck_trip_participants_seats"),
    sa.UniqueConstraint("trip_id", "user_id", name="unique_trip_participant"),
    sa.Index("idx_trip_participants_trip", "trip_id"),
    sa.Index("idx_trip_participants_user", "user_id"),
)

notifications = sa.Table(
    "notifications",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id", ondelete="SET NULL"), nullable=True),
    sa.Column("type", sa.String(32), nullable=False),
    sa.Column("title", sa.String(255), nullable=False),
    sa.Column("body", sa.Text(), nullable=False),
    sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
    sa.Column("created_at", sa.DateTime(), nullable=False),
    sa.Index("idx_notifications_user_created", "user_id", "created_at"),
)

messages = sa.Table(
    "messages",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
    # NULL for system messages
    sa.Column("sender_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
    sa.Column("content", sa.Text(), nullable=False),
    sa.Column("message_type", sa.String(16), nullable=False, server_default="text"),
    sa.Column("created_at", sa.DateTime(), nullable=False),
    sa.Index("idx_messages_trip_created", "trip_id", "created_at"),
)

# read_by set of a message; rows are only ever added
message_reads = sa.Table(
    "message_reads",
    metadata,
    sa.Column("message_id", sa.String(36), sa.ForeignKey("messages.id", ondelete="CASCADE"), nullable=False),
    sa.Column("user_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("read_at", sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint("message_id", "user_id"),
)

reviews = sa.Table(
    "reviews",
    metadata,
    sa.Column("id", sa.String(36), primary_key=True),
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
    sa.Column("reviewer_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("reviewee_id", sa.String(36), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
    sa.Column("rating", sa.Integer(), nullable=False),
    sa.Column("comment", sa.Text(), nullable=True),
    sa.Column("tags", sa.JSON(), nullable=True),
    sa.Column("created_at", sa.DateTime(), nullable=False),
    sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating"),
    sa.UniqueConstraint("trip_id", "reviewer_id", "reviewee_id", name="unique_review"),
)

# One row per (trip, reminder window) already sent
trip_reminders_sent = sa.Table(
    "trip_reminders_sent",
    metadata,
    sa.Column("trip_id", sa.String(36), sa.ForeignKey("trips.id", ondelete="CASCADE"), nullable=False),
    sa.Column("reminder_window", sa.String(16), nullable=False),  # '24h' | '1h'
    sa.Column("sent_at", sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint("trip_id", "reminder_window"),
)
