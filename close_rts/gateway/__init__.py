from close_rts.gateway.base import OrderGateway
from close_rts.gateway.ibkr import IBKRGateway
from close_rts.gateway.sim import SimGateway

__all__ = ["OrderGateway", "IBKRGateway", "SimGateway"]
