from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

STAT_TABLES = ('stat_minutely', 'stat_hourly', 'stat_daily')


def upgrade() -> None:
	op.create_table(
		'monitor',
		sa.Column('id', sa.Integer, primary_key=True),
		sa.Column('name', sa.String(200), nullable=False, unique=True),
		sa.Column('url', sa.String(2048), nullable=False),
		sa.Column('kind', sa.String(16), nullable=False, server_default='http'),
		sa.Column('interval_s', sa.Integer, nullable=False),
		sa.Column('timeout_s', sa.Integer, nullable=False),
		sa.Column('retry_count', sa.Integer, nullable=False),
		sa.Column('accepted_statuses', sa.String(256), nullable=False, server_default='200-399'),
		sa.Column('follow_redirects', sa.Boolean, nullable=False),
		sa.Column('max_redirects', sa.Integer, nullable=False),
		sa.Column('keyword', sa.String(512)),
		sa.Column('keyword_case_sensitive', sa.Boolean, nullable=False),
		sa.Column('keyword_invert', sa.Boolean, nullable=False),
		sa.Column('verify_tls', sa.Boolean, nullable=False),
		sa.Column('cert_expiry_days', sa.Integer, nullable=False),
		sa.Column('active', sa.Boolean, nullable=False, server_default=sa.true()),
		sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
		sa.CheckConstraint('interval_s >= 1'),
		sa.CheckConstraint('timeout_s >= 1'),
		sa.CheckConstraint('retry_count >= 1'),
	)
	op.create_table(
		'monitor_status',
		sa.Column('monitor_id', sa.Integer, sa.ForeignKey('monitor.id', ondelete='CASCADE'), primary_key=True),
		sa.Column('last_check_time', sa.DateTime(timezone=True)),
		sa.Column('last_status_code', sa.Integer),
		sa.Column('last_response_time', sa.Integer),
		sa.Column('is_up', sa.Boolean),
		sa.Column('last_error', sa.String(512)),
		sa.Column('total_checks', sa.Integer, nullable=False, server_default='0'),
		sa.Column('total_successful_checks', sa.Integer, nullable=False, server_default='0'),
	)
	op.create_table(
		'heartbeat',
		sa.Column('id', sa.Integer, primary_key=True),
		sa.Column('monitor_id', sa.Integer, sa.ForeignKey('monitor.id', ondelete='CASCADE'), nullable=False),
		sa.Column('ts', sa.DateTime(timezone=True), nullable=False),
		sa.Column('status', sa.Integer, nullable=False),
		sa.Column('ping', sa.Integer),
		sa.Column('message', sa.String(512)),
	)
	op.create_index('idx_heartbeat_monitor_ts', 'heartbeat', ['monitor_id', 'ts'])
	for name in STAT_TABLES:
		op.create_table(
			name,
			sa.Column('id', sa.Integer, primary_key=True),
			sa.Column('monitor_id', sa.Integer, sa.ForeignKey('monitor.id', ondelete='CASCADE'), nullable=False),
			sa.Column('bucket_ts', sa.BigInteger, nullable=False),
			sa.Column('up_count', sa.Integer, nullable=False, server_default='0'),
			sa.Column('down_count', sa.Integer, nullable=False, server_default='0'),
			sa.Column('maintenance_count', sa.Integer, nullable=False, server_default='0'),
			sa.Column('avg_ping', sa.Float),
			sa.Column('min_ping', sa.Integer),
			sa.Column('max_ping', sa.Integer),
			sa.Column('ping_count', sa.Integer, nullable=False, server_default='0'),
			sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
			sa.UniqueConstraint('monitor_id', 'bucket_ts', name=f'uq_{name}_monitor_bucket'),
		)


def downgrade() -> None:
	for name in reversed(STAT_TABLES):
		op.drop_table(name)
	op.drop_index('idx_heartbeat_monitor_ts', table_name='heartbeat')
	op.drop_table('heartbeat')
	op.drop_table('monitor_status')
	op.drop_table('monitor')
