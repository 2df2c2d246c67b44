# /txpipe/core/gas_estimator.py
# Remote gas estimation, used only when the caller opts in.
from decimal import ROUND_CEILING, Decimal

from txpipe.core.config import settings
from txpipe.core.logger import get_logger
from txpipe.core.types import TransactionRequest

log = get_logger(__name__)


class GasEstimator:
    """
    Asks the endpoint for a gas limit instead of simulating locally.
    """
    def __init__(self, endpoint, buffer: float | None = None):
        self.endpoint = endpoint
        self.buffer = Decimal(str(settings.GAS_ESTIMATE_BUFFER if buffer is None else buffer))

    async def estimate_gas_limit(self, request: TransactionRequest) -> int:
        """
        Returns the node's eth_estimateGas answer times the configured buffer.
        """
        call = {"from": request.sender, "value": request.value, "data": "0x" + request.payload.hex()}
        if request.recipient:
            call["to"] = request.recipient
        estimate = await self.endpoint.estimate_gas(call)
        limit = int((Decimal(estimate) * self.buffer).to_integral_value(rounding=ROUND_CEILING))
        log.debug("GAS_LIMIT_ESTIMATED", category=request.category, estimate=estimate, limit=limit)
        return limit
