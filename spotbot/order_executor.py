# spotbot/order_executor.py
import logging

from spotbot.datastructures import FillConfirmation, Order
from spotbot.exchange_connector import ExchangeConnector


class OrderExecutor:
    """
    Sends concrete market orders to the ExchangeConnector and turns the
    venue's acknowledgement into a FillConfirmation. Market orders are
    assumed to fill immediately at the prevailing price.
    """
    def __init__(self, connector: ExchangeConnector):
        self.connector = connector

    async def execute(self, order: Order, reference_price: float) -> FillConfirmation:
        """Raises ExchangeError when the order could not be placed."""
        logging.info(f"Executor received order to process: {order}")
        result = await self.connector.place_order(order)

        # Market order acks rarely carry an average price; fall back to the
        # price the decision was made on.
        fill_price = float(result.get('avgPrice') or 0) or reference_price

        return FillConfirmation(
            symbol=order.symbol,
            order_id=str(result['orderId']),
            side=order.side,
            qty=order.qty,
            price=fill_price,
            tag=order.tag,
        )
