from decimal import Decimal

from flask import current_app
from sqlalchemy import update

from battle_quiz import db
from battle_quiz.models import User, Transaction


def _amount(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal('0.01'))


def try_debit(user_id: int, amount) -> bool:
    """Conditionally decrement the wallet.

    The balance check and the decrement are one UPDATE, so a concurrent
    debit that already drained the wallet makes this one fail instead of
    overdrawing. Runs inside the caller's transaction; nothing is committed.
    """
    amount = _amount(amount)
    if amount == 0:
        return db.session.get(User, user_id) is not None
    result = db.session.execute(
        update(User)
        .where(User.id == user_id, User.wallet_balance >= amount)
        .values(wallet_balance=User.wallet_balance - amount)
        .execution_options(synchronize_session=False)
    )
    ok = result.rowcount == 1
    current_app.logger.info(f"[wallet-debit] user={user_id} amount={amount} ok={ok}")
    return ok


def credit(user_id: int, amount) -> None:
    amount = _amount(amount)
    if amount == 0:
        return
    result = db.session.execute(
        update(User)
        .where(User.id == user_id)
        .values(wallet_balance=User.wallet_balance + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise LookupError(f"wallet for user {user_id} not found")
    current_app.logger.info(f"[wallet-credit] user={user_id} amount={amount}")


def record_transaction(user_id: int, amount, kind: str, status: str = Transaction.COMPLETED,
                       quiz_id=None, match_id=None) -> Transaction:
    txn = Transaction(
        user_id=user_id,
        amount=_amount(amount),
        kind=kind,
        status=status,
        quiz_id=quiz_id,
        match_id=match_id,
    )
    db.session.add(txn)
    return txn


def balance(user_id: int) -> Decimal:
    value = db.session.execute(
        db.select(User.wallet_balance).where(User.id == user_id)
    ).scalar_one_or_none()
    if value is None:
        raise LookupError(f"wallet for user {user_id} not found")
    return _amount(value)


def recent_transactions(user_id: int, limit: int = 50):
    return (Transaction.query
            .filter_by(user_id=user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
            .all())
