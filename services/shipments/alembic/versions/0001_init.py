from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'shipments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False, index=True),
        sa.Column('booking_reference_id', sa.String(64), nullable=False, unique=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('current_leg', sa.String(20), nullable=False),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        sa.Column('domestic_awb', sa.String(64), nullable=True),
        sa.Column('international_awb', sa.String(64), nullable=True),
        sa.Column('is_simulated', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('recipient_name', sa.String(200), nullable=False),
        sa.Column('recipient_phone', sa.String(20), nullable=False),
        sa.Column('recipient_email', sa.String(254), nullable=True),
        sa.Column('origin_address', sa.String(500), nullable=False),
        sa.Column('destination_address', sa.String(500), nullable=False),
        sa.Column('destination_country', sa.String(100), nullable=False),
        sa.Column('weight_kg', sa.Float, nullable=False),
        sa.Column('declared_value', sa.Float, nullable=False),
        sa.Column('shipment_type', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_shipments_leg_updated', 'shipments', ['current_leg', 'updated_at'])

    op.create_table(
        'shipment_timeline',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shipment_id', sa.String(36), sa.ForeignKey('shipments.id'), nullable=False, index=True),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('leg', sa.String(20), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
        sa.Column('metadata', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('shipment_id', 'version', name='uq_timeline_shipment_version'),
    )

    op.create_table(
        'shipment_alerts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('shipment_id', sa.String(36), sa.ForeignKey('shipments.id'), nullable=False, index=True),
        sa.Column('kind', sa.String(40), nullable=False),
        sa.Column('shipment_version', sa.Integer, nullable=False),
        sa.Column('stuck_hours', sa.Integer, nullable=False),
        sa.Column('threshold_hours', sa.Integer, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('shipment_id', 'kind', 'shipment_version', name='uq_alert_shipment_kind_version'),
    )

    op.create_table(
        'api_logs',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('shipment_id', sa.String(36), nullable=True),
        sa.Column('api_type', sa.String(30), nullable=False),
        sa.Column('request_payload', sa.JSON, nullable=False),
        sa.Column('response_payload', sa.JSON, nullable=False),
        sa.Column('http_status', sa.Integer, nullable=False),
        sa.Column('execution_time_ms', sa.Integer, nullable=False),
        sa.Column('correlation_id', sa.String(36), nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

def downgrade():
    op.drop_table('api_logs')
    op.drop_table('shipment_alerts')
    op.drop_table('shipment_timeline')
    op.drop_index('ix_shipments_leg_updated', table_name='shipments')
    op.drop_table('shipments')
