from crustup.ledger.base import InclusionResult, LedgerClient, TxCall

__all__ = ["InclusionResult", "LedgerClient", "TxCall"]
