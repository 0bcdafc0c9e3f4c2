"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-17

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create episodes table (catalogue rows, read-only for this service)
    op.create_table(
        'episodes',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('audio_url', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
    )

    # Create transcripts table
    op.create_table(
        'transcripts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('episode_id', sa.Integer(), sa.ForeignKey('episodes.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('status', sa.Enum('processing', 'complete', 'failed', name='transcriptstatus'), nullable=False, server_default='processing'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create transcript_chunks table
    op.create_table(
        'transcript_chunks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('transcript_id', sa.Integer(), sa.ForeignKey('transcripts.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('speaker_index', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('start_time', sa.Float(), nullable=False, server_default='0'),
        sa.Column('end_time', sa.Float(), nullable=False, server_default='0'),
        sa.Column('text', sa.Text(), nullable=False, server_default=''),
        sa.UniqueConstraint('transcript_id', 'position', name='uq_transcript_chunks_position'),
    )

    # Create transcript_speakers table
    op.create_table(
        'transcript_speakers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('transcript_id', sa.Integer(), sa.ForeignKey('transcripts.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('speaker_index', sa.Integer(), nullable=False),
        sa.Column('speaker_name', sa.String(255), nullable=False),
        sa.Column('inferred_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('transcript_id', 'speaker_index', name='uq_transcript_speakers_index'),
    )

    # Create questions table
    op.create_table(
        'questions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('episode_id', sa.Integer(), sa.ForeignKey('episodes.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('question_text', sa.Text(), nullable=False),
        sa.Column('type', sa.Enum('multiple_choice', 'true_false', 'open_ended', name='questiontype'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create question_options table
    op.create_table(
        'question_options',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('option_text', sa.Text(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_correct', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create user_quiz_sessions table
    op.create_table(
        'user_quiz_sessions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.Integer(), nullable=False, index=True),
        sa.Column('episode_id', sa.Integer(), sa.ForeignKey('episodes.id', ondelete='CASCADE'), nullable=False),
        sa.Column('status', sa.Enum('in_progress', 'completed', 'abandoned', name='sessionstatus'), nullable=False, server_default='in_progress'),
        sa.Column('total_questions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('answered_questions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('correct_answers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # Create user_answers table
    op.create_table(
        'user_answers',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('user_quiz_sessions.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('questions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, index=True),
        sa.Column('selected_option_id', sa.Integer(), sa.ForeignKey('question_options.id', ondelete='CASCADE'), nullable=True),
        sa.Column('text_answer', sa.Text(), nullable=True),
        sa.Column('is_correct', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('feedback', sa.Text(), nullable=False, server_default=''),
        sa.Column('answered_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('session_id', 'question_id', name='uq_user_answers_session_question'),
    )

    # Create indexes
    op.create_index(
        'ix_user_quiz_sessions_user_episode_started',
        'user_quiz_sessions',
        ['user_id', 'episode_id', sa.text('started_at DESC')],
    )
    op.create_index(
        'uq_user_quiz_sessions_active',
        'user_quiz_sessions',
        ['user_id', 'episode_id'],
        unique=True,
        postgresql_where=sa.text("status = 'in_progress'"),
    )


def downgrade() -> None:
    op.drop_index('uq_user_quiz_sessions_active', table_name='user_quiz_sessions')
    op.drop_index('ix_user_quiz_sessions_user_episode_started', table_name='user_quiz_sessions')
    op.drop_table('user_answers')
    op.drop_table('user_quiz_sessions')
    op.drop_table('question_options')
    op.drop_table('questions')
    op.drop_table('transcript_speakers')
    op.drop_table('transcript_chunks')
    op.drop_table('transcripts')
    op.drop_table('episodes')
    op.execute('DROP TYPE IF EXISTS sessionstatus')
    op.execute('DROP TYPE IF EXISTS questiontype')
    op.execute('DROP TYPE IF EXISTS transcriptstatus')
