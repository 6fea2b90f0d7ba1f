"""
Transaction Deduplication Module

Keeps the ledger free of duplicate synced entries. The external
transaction id is the idempotency key; the unique constraint on it is the
final arbiter when two sync passes race on the same entry.
"""

import logging
from typing import Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import Transaction

logger = logging.getLogger(__name__)


class TransactionDeduplicator:
    """
    Lookups and inserts keyed by external transaction id.

    Guards against:
    - Duplicate webhook delivery of the same changeset
    - Two overlapping sync runs for the same item
    - Re-application of a page after a crash before the next cursor was stored
    """

    @staticmethod
    def find_by_external_id(
        db: Session,
        external_id: str,
        user_id: Optional[int] = None
    ) -> Optional[Transaction]:
        """
        Find a ledger entry by its external transaction id.

        Soft-deleted rows are returned too; they still own the id.

        Args:
            db: Database session
            external_id: External transaction id from the aggregator
            user_id: Restrict the lookup to one user's ledger when given

        Returns:
            Matching Transaction or None
        """
        query = db.query(Transaction).filter(
            Transaction.external_transaction_id == external_id
        )
        if user_id is not None:
            query = query.filter(Transaction.user_id == user_id)
        return query.first()

    @staticmethod
    def exists(db: Session, external_id: str) -> bool:
        """True if any ledger entry already carries this external id."""
        return db.query(Transaction.id).filter(
            Transaction.external_transaction_id == external_id
        ).first() is not None

    @staticmethod
    def insert_if_absent(db: Session, transaction: Transaction) -> bool:
        """
        Insert a synced ledger entry unless its external id is already taken.

        The insert runs inside a SAVEPOINT so a duplicate-key failure only
        rolls back this one row, never the caller's transaction.

        Returns:
            True if the row was inserted, False if it was already present

        Example:
            >>> inserted = TransactionDeduplicator.insert_if_absent(db, tx)
            >>> if not inserted:
            ...     print("Already in ledger, nothing to do")
        """
        try:
            with db.begin_nested():
                db.add(transaction)
        except IntegrityError:
            logger.info(
                f"Transaction {transaction.external_transaction_id} inserted concurrently, treating as present"
            )
            return False
        return True
