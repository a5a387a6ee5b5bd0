# app/core/escrow/__init__.py
"""
Escrow Layer - hold-then-settle money movement for service requests.

- ``domain`` - Escrow, WalletAccount, ledger postings (integer minor units)
- ``commission`` - basis-point commission split and rate providers
- ``engine`` - fund / release / refund state machine
- ``ports`` - ledger store protocol

Wallet balances change only through ``AsyncLedgerStore`` transactions
issued by ``EscrowEngine``.
"""
