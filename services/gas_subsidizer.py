"""
Gas Subsidizer
Tops up custodial user wallets with just enough native coin for one transaction
"""

import logging
from dataclasses import dataclass
from typing import Optional

from config import Config
from utils.exceptions import OperatorUnderfundedError

logger = logging.getLogger(__name__)


@dataclass
class GasFunding:
    funded: bool
    amount_native: int = 0
    required: int = 0
    balance_before: int = 0


class GasSubsidizer:
    """
    Funds the shortfall between a wallet's balance and estimated_gas * price * factor.

    The safety factor covers gas-price drift between estimate and submission
    and leaves headroom for a follow-up transaction from the same wallet.
    """

    def __init__(self, gateway, safety_factor: Optional[int] = None):
        self.gateway = gateway
        self.safety_factor = safety_factor or Config.GAS_SAFETY_FACTOR

    async def required_balance(self, estimated_gas: int, gas_price: Optional[int] = None) -> int:
        if gas_price is None:
            gas_price = await self.gateway.gas_price()
        return int(estimated_gas) * int(gas_price) * self.safety_factor

    async def ensure_gas(self, user_addr: str, estimated_gas: int) -> GasFunding:
        gas_price = await self.gateway.gas_price()
        required = await self.required_balance(estimated_gas, gas_price)
        balance = await self.gateway.native_balance(user_addr)

        if balance >= required:
            return GasFunding(funded=False, required=required, balance_before=balance)

        shortfall = required - balance
        operator = self.gateway.operator_address
        operator_balance = await self.gateway.native_balance(operator)
        # The top-up itself costs the operator a plain transfer's gas
        operator_needs = shortfall + 21000 * gas_price
        if operator_balance < operator_needs:
            logger.critical(
                f"🚨 ALERT OPERATOR_UNDERFUNDED: operator={operator} balance={operator_balance} "
                f"needs={operator_needs} - user-initiated writes halted"
            )
            raise OperatorUnderfundedError(
                "Operator wallet cannot cover gas subsidies",
                details={"operator": operator, "operator_balance": str(operator_balance), "required": str(operator_needs)},
            )

        logger.info(f"⛽ GAS_TOPUP: {user_addr} balance={balance} required={required} sending={shortfall}")
        await self.gateway.transfer_native(user_addr, shortfall)
        return GasFunding(funded=True, amount_native=shortfall, required=required, balance_before=balance)
