"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Trigram similarity for name matching
    op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")

    # Stores (tenants)
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('plan', sa.String(length=20), nullable=False, server_default='starter'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Owned catalog items
    op.create_table(
        'owned_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('normalized_name', sa.Text(), nullable=False, server_default=''),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE')
    )
    op.create_index('ix_owned_items_store_id', 'owned_items', ['store_id'])
    op.execute(
        "CREATE INDEX ix_owned_items_normalized_name_trgm "
        "ON owned_items USING gin (normalized_name gin_trgm_ops)"
    )

    # Competitors
    op.create_table(
        'competitors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('last_sync_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('store_id', 'url', name='uq_competitor_store_url')
    )
    op.create_index('ix_competitors_store_id', 'competitors', ['store_id'])

    # Discovery runs
    op.create_table(
        'discovery_runs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('listings_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('listings_skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('listings_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('candidates_built', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('auto_confirmed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quota_remaining', sa.Integer(), nullable=True),
        sa.Column('warning', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('run_id')
    )
    op.create_index('ix_discovery_runs_competitor_id', 'discovery_runs', ['competitor_id'])

    # Staging for scraped listings
    op.create_table(
        'scraped_listings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('url', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('competitor_id', 'url', name='uq_scraped_listing_competitor_url')
    )

    # Match candidates
    op.create_table(
        'match_candidates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('run_id', sa.String(length=64), nullable=True),
        sa.Column('owned_item_id', sa.Integer(), nullable=False),
        sa.Column('listing_url', sa.Text(), nullable=False),
        sa.Column('listing_name', sa.Text(), nullable=False),
        sa.Column('price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('state', sa.String(length=20), nullable=False, server_default='candidate'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['owned_item_id'], ['owned_items.id'], ondelete='CASCADE')
    )
    op.create_index('ix_match_candidates_store_competitor', 'match_candidates', ['store_id', 'competitor_id'])
    op.create_index('ix_match_candidates_owned_item', 'match_candidates', ['owned_item_id'])

    # Confirmed matches
    op.create_table(
        'confirmed_matches',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('owned_item_id', sa.Integer(), nullable=False),
        sa.Column('competitor_id', sa.Integer(), nullable=False),
        sa.Column('listing_url', sa.Text(), nullable=False),
        sa.Column('listing_name', sa.Text(), nullable=True),
        sa.Column('score', sa.Float(), nullable=True),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='discovery'),
        sa.Column('last_price', sa.Numeric(precision=10, scale=2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('confirmed_at', sa.DateTime(), nullable=False),
        sa.Column('last_synced_at', sa.DateTime(), nullable=True),
        sa.Column('last_changed_at', sa.DateTime(), nullable=True),
        sa.Column('price_hash', sa.String(length=64), nullable=True),
        sa.Column('no_change_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('needs_attention', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['owned_item_id'], ['owned_items.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['competitor_id'], ['competitors.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('owned_item_id', 'competitor_id', name='uq_confirmed_match_item_competitor')
    )
    op.create_index('ix_confirmed_matches_store_id', 'confirmed_matches', ['store_id'])


def downgrade() -> None:
    op.drop_table('confirmed_matches')
    op.drop_table('match_candidates')
    op.drop_table('scraped_listings')
    op.drop_table('discovery_runs')
    op.drop_table('competitors')
    op.execute("DROP INDEX IF EXISTS ix_owned_items_normalized_name_trgm")
    op.drop_table('owned_items')
    op.drop_table('stores')
