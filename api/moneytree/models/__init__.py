from moneytree.models.account import Account, Transaction
from moneytree.models.connection import InstitutionConnection, TransactionCursors

__all__ = ["Account", "InstitutionConnection", "Transaction", "TransactionCursors"]
