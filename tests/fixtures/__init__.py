"""
Test Fixtures Package
In-memory chain and wallet doubles plus record factories
"""

from .chain_fakes import FakeChainGateway, FakeWalletRegistry
from .factories import (
    ADMIN_ID,
    BUYER_ID,
    CHAIN_START_TS,
    SELLER_ID,
    STRANGER_ID,
    VALID_BANK_DETAIL,
    create_order,
    insert_confirmed_burn,
)

__all__ = [
    'FakeChainGateway',
    'FakeWalletRegistry',
    'ADMIN_ID',
    'BUYER_ID',
    'CHAIN_START_TS',
    'SELLER_ID',
    'STRANGER_ID',
    'VALID_BANK_DETAIL',
    'create_order',
    'insert_confirmed_burn',
]
