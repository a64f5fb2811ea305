"""
Customer Identity Resolver - maps an account to its Stripe customer
"""
from typing import Optional
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
import logging

from ..db.models import Account
from ..exceptions import AccountNotFound, PersistenceError
from .billing_gateway import BillingGateway

logger = logging.getLogger(__name__)


class CustomerIdentityResolver:
    """
    Resolve (and lazily create) the provider customer of an account

    Creation is a compare-and-set on ``accounts.external_customer_id``: the
    update only applies while the column is still NULL, so of two concurrent
    resolvers exactly one stores its id and the other returns the winner's.
    The provider call itself carries an idempotency key per account, which
    keeps concurrent creations from producing two provider customers.
    """

    def __init__(self, db: Session, gateway: BillingGateway):
        self.db = db
        self.gateway = gateway

    def resolve(self, account_id: str, email: Optional[str] = None) -> str:
        """
        Return the account's external customer id, creating it on first use

        Args:
            account_id: Internal account id
            email: Email for the provider record (defaults to the stored email)

        Returns:
            External customer id

        Raises:
            AccountNotFound: if the account does not exist
            ExternalProviderError: if the provider call fails
            PersistenceError: if the id cannot be stored
        """
        account = self._load(account_id)
        if account.external_customer_id:
            return account.external_customer_id

        customer = self.gateway.create_customer(
            email=email or account.email,
            metadata={"account_id": account_id},
            idempotency_key=f"customer-{account_id}",
        )
        customer_id = customer["customer_id"]

        try:
            result = self.db.execute(
                update(Account)
                .where(Account.id == account_id, Account.external_customer_id.is_(None))
                .values(external_customer_id=customer_id, version=Account.version + 1)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except IntegrityError:
            # Another account already holds this customer id, or a concurrent
            # writer won the unique index
            self.db.rollback()
            result = None
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceError(f"Failed to store customer id for account {account_id}") from e

        if result is not None and result.rowcount == 1:
            logger.info(f"Created Stripe customer {customer_id} for account {account_id}")
            self.db.expire(account)
            return customer_id

        winner = self._load(account_id, refresh=True)
        if not winner.external_customer_id:
            raise PersistenceError(f"Customer id for account {account_id} could not be stored")
        if winner.external_customer_id != customer_id:
            logger.warning(
                f"Account {account_id} resolved concurrently; keeping {winner.external_customer_id}, "
                f"discarding {customer_id}"
            )
        return winner.external_customer_id

    def _load(self, account_id: str, refresh: bool = False) -> Account:
        query = self.db.query(Account).filter(Account.id == account_id)
        if refresh:
            query = query.populate_existing()
        account = query.first()
        if not account:
            raise AccountNotFound(account_id)
        return account
