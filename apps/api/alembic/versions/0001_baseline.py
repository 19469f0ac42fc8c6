"""Baseline: keys, projects, forms, submissions and their versions.

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-19

Creates:
- actors, keys, blobs
- projects, forms, form_defs
- submissions, submission_defs (explicit sequence), submission_attachments
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_baseline'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'actors',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('type', sa.String(20), server_default=sa.text("'user'"), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'keys',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('public', sa.Text(), nullable=False),
        sa.Column('private', sa.JSON(), nullable=True),
        sa.Column('managed', sa.Boolean(), server_default=sa.text('false'), nullable=False),
        sa.Column('hint', sa.String(255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('public', name='uq_keys_public'),
    )

    op.create_table(
        'blobs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('sha', sa.String(64), nullable=False),
        sa.Column('content', sa.LargeBinary(), nullable=False),
        sa.Column('content_type', sa.String(255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sha', name='uq_blobs_sha'),
    )

    op.create_table(
        'projects',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('key_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['key_id'], ['keys.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table(
        'forms',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('project_id', sa.Integer(), nullable=False),
        sa.Column('xml_form_id', sa.String(255), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['project_id'], ['projects.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('project_id', 'xml_form_id', name='uq_forms_project_xml_form_id'),
    )
    op.create_index('idx_forms_project', 'forms', ['project_id'])

    op.create_table(
        'form_defs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('form_id', sa.Integer(), nullable=False),
        sa.Column('xml', sa.Text(), nullable=False),
        sa.Column('version', sa.String(255), server_default=sa.text("''"), nullable=False),
        sa.Column('key_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['key_id'], ['keys.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_form_defs_form', 'form_defs', ['form_id'])
    op.create_index('idx_form_defs_key', 'form_defs', ['key_id'])

    op.create_table(
        'submissions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('form_id', sa.Integer(), nullable=False),
        sa.Column('instance_id', sa.String(255), nullable=False),
        sa.Column('submitter_id', sa.Integer(), nullable=True),
        sa.Column('device_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deleted_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['form_id'], ['forms.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['submitter_id'], ['actors.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('form_id', 'instance_id', name='uq_submissions_form_instance'),
    )
    op.create_index('idx_submissions_form', 'submissions', ['form_id'])

    op.create_table(
        'submission_defs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('submission_id', sa.Integer(), nullable=False),
        sa.Column('form_def_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('xml', sa.Text(), nullable=True),
        sa.Column('envelope_sha256', sa.String(64), nullable=False),
        sa.Column('local_key', sa.Text(), nullable=True),
        sa.Column('enc_data_attachment_name', sa.String(255), nullable=True),
        sa.Column('signature', sa.Text(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['submission_id'], ['submissions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['form_def_id'], ['form_defs.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('submission_id', 'sequence', name='uq_submission_defs_sequence'),
    )
    op.create_index('idx_submission_defs_submission', 'submission_defs', ['submission_id'])
    op.create_index('idx_submission_defs_form_def', 'submission_defs', ['form_def_id'])

    op.create_table(
        'submission_attachments',
        sa.Column('submission_def_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('blob_id', sa.Integer(), nullable=True),
        sa.Column('index', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['submission_def_id'], ['submission_defs.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['blob_id'], ['blobs.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('submission_def_id', 'name'),
    )


def downgrade() -> None:
    op.drop_table('submission_attachments')
    op.drop_index('idx_submission_defs_form_def', table_name='submission_defs')
    op.drop_index('idx_submission_defs_submission', table_name='submission_defs')
    op.drop_table('submission_defs')
    op.drop_index('idx_submissions_form', table_name='submissions')
    op.drop_table('submissions')
    op.drop_index('idx_form_defs_key', table_name='form_defs')
    op.drop_index('idx_form_defs_form', table_name='form_defs')
    op.drop_table('form_defs')
    op.drop_index('idx_forms_project', table_name='forms')
    op.drop_table('forms')
    op.drop_table('projects')
    op.drop_table('blobs')
    op.drop_table('keys')
    op.drop_table('actors')
