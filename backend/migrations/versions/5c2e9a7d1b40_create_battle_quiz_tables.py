"""create battle quiz tables

Revision ID: 5c2e9a7d1b40
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9a7d1b40'
down_revision = None
branch_labels = None
depends_on = None


ACTIVE_PARTICIPANT = "status IN ('WAITING', 'PLAYING')"


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('password_hash', sa.String(length=256), nullable=False),
        sa.Column('wallet_balance', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.CheckConstraint('wallet_balance >= 0', name='ck_user_wallet_non_negative'),
    )
    op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'quiz',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=128), nullable=False),
        sa.Column('entry_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('question_count', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('time_per_question', sa.Integer(), nullable=False, server_default='15'),
        sa.Column('max_players', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint('entry_amount >= 0', name='ck_quiz_entry_non_negative'),
    )

    op.create_table(
        'question',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quiz_id', sa.Integer(), sa.ForeignKey('quiz.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('options', sa.Text(), nullable=False),
        sa.Column('correct_index', sa.Integer(), nullable=False),
        sa.Column('marks', sa.Integer(), nullable=False, server_default='1'),
    )
    op.create_index('ix_question_quiz_id', 'question', ['quiz_id'])

    op.create_table(
        'battle_match',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quiz_id', sa.Integer(), sa.ForeignKey('quiz.id'), nullable=False),
        sa.Column('player1_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('player2_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('current_round', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_rounds', sa.Integer(), nullable=False),
        sa.Column('player1_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('player2_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('winner_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=True),
        sa.Column('entry_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('prize_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('payout_status', sa.String(length=16), nullable=False, server_default='NONE'),
        sa.Column('start_time', sa.DateTime(), nullable=False),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(), nullable=False),
        sa.Column('end_reason', sa.String(length=32), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('player1_id <> player2_id', name='ck_match_distinct_players'),
        sa.CheckConstraint('current_round >= 0 AND current_round <= total_rounds', name='ck_match_round_range'),
    )
    op.create_index('ix_battle_match_quiz_id', 'battle_match', ['quiz_id'])

    op.create_table(
        'participant',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quiz_id', sa.Integer(), sa.ForeignKey('quiz.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('match_id', sa.Integer(), sa.ForeignKey('battle_match.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_participant_quiz_id', 'participant', ['quiz_id'])
    op.create_index('ix_participant_user_id', 'participant', ['user_id'])
    op.create_index(
        'uq_participant_active', 'participant', ['quiz_id', 'user_id'], unique=True,
        sqlite_where=sa.text(ACTIVE_PARTICIPANT),
        postgresql_where=sa.text(ACTIVE_PARTICIPANT),
    )

    op.create_table(
        'answer_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('match_id', sa.Integer(), sa.ForeignKey('battle_match.id'), nullable=False),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('question_id', sa.Integer(), sa.ForeignKey('question.id'), nullable=False),
        sa.Column('selected_option', sa.Integer(), nullable=False),
        sa.Column('is_correct', sa.Boolean(), nullable=False),
        sa.Column('points', sa.Integer(), nullable=False),
        sa.Column('time_taken', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('match_id', 'user_id', 'question_id', name='uq_answer_once'),
    )
    op.create_index('ix_answer_record_match_id', 'answer_record', ['match_id'])

    op.create_table(
        'wallet_transaction',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('quiz_id', sa.Integer(), sa.ForeignKey('quiz.id'), nullable=True),
        sa.Column('match_id', sa.Integer(), sa.ForeignKey('battle_match.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_wallet_transaction_user_id', 'wallet_transaction', ['user_id'])

    op.create_table(
        'winner_record',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('quiz_id', sa.Integer(), sa.ForeignKey('quiz.id'), nullable=False),
        sa.Column('match_id', sa.Integer(), sa.ForeignKey('battle_match.id'), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), nullable=False),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('prize_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('paid', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'battle_stats',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('user.id'), primary_key=True),
        sa.Column('total_matches', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('wins', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('losses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ties', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('current_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('best_streak', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_winnings', sa.Numeric(12, 2), nullable=False, server_default='0'),
    )


def downgrade():
    op.drop_table('battle_stats')
    op.drop_table('winner_record')
    op.drop_index('ix_wallet_transaction_user_id', table_name='wallet_transaction')
    op.drop_table('wallet_transaction')
    op.drop_index('ix_answer_record_match_id', table_name='answer_record')
    op.drop_table('answer_record')
    op.drop_index('uq_participant_active', table_name='participant')
    op.drop_index('ix_participant_user_id', table_name='participant')
    op.drop_index('ix_participant_quiz_id', table_name='participant')
    op.drop_table('participant')
    op.drop_index('ix_battle_match_quiz_id', table_name='battle_match')
    op.drop_table('battle_match')
    op.drop_index('ix_question_quiz_id', table_name='question')
    op.drop_table('question')
    op.drop_table('quiz')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
