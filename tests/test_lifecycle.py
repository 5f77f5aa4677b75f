import logging
import threading
import unittest
from decimal import Decimal

from close_rts.instruments import InstrumentSpec
from close_rts.lifecycle import OrderLifecycle
from close_rts.orders import Order, OrderNotification, OrderRequest, OrderState, OrderTag, Side, next_order_id

logging.disable(logging.CRITICAL)


def _order(tag=OrderTag.TIME_EXIT, symbol="RTS"):
    req = OrderRequest(
        instrument=InstrumentSpec(kind="STK", symbol=symbol),
        side=Side.SELL,
        quantity=Decimal("1"),
        limit_price=Decimal("100"),
        tag=tag,
    )
    return Order(order_id=next_order_id(), request=req)


class TestOrderLifecycle(unittest.TestCase):
    def setUp(self):
        self.lc = OrderLifecycle()
        self.order = _order()
        self.lc.track(self.order)
        self.calls = []

    def _note(self, state, **kw):
        self.lc.publish(OrderNotification(self.order.order_id, state, **kw))

    def test_notifications_apply_only_on_drain(self):
        self.lc.on(self.order.order_id, OrderState.REGISTERED, lambda o: self.calls.append("registered"))
        self._note(OrderState.REGISTERED)
        self.assertEqual(self.calls, [])
        self.assertIs(self.order.state, OrderState.SUBMITTED)
        self.assertEqual(self.lc.drain(), 1)
        self.assertEqual(self.calls, ["registered"])
        self.assertIs(self.order.state, OrderState.REGISTERED)

    def test_handlers_fire_once_in_subscription_order(self):
        self.lc.on(self.order.order_id, OrderState.MATCHED, lambda o: self.calls.append("first"))
        self.lc.on(self.order.order_id, OrderState.MATCHED, lambda o: self.calls.append("second"))
        self._note(OrderState.REGISTERED)
        self._note(OrderState.MATCHED, filled=Decimal("1"), avg_fill_price=Decimal("99"))
        self._note(OrderState.MATCHED)
        self.lc.drain()
        self.assertEqual(self.calls, ["first", "second"])
        self.assertEqual(self.order.avg_fill_price, Decimal("99"))
        self.assertEqual(self.order.history, [OrderState.SUBMITTED, OrderState.REGISTERED, OrderState.MATCHED])

    def test_match_before_registration_passes_through_registered(self):
        self.lc.on(self.order.order_id, OrderState.REGISTERED, lambda o: self.calls.append("registered"))
        self.lc.on(self.order.order_id, OrderState.MATCHED, lambda o: self.calls.append("matched"))
        self._note(OrderState.MATCHED)
        self._note(OrderState.REGISTERED)
        self.lc.drain()
        self.assertEqual(self.calls, ["registered", "matched"])
        self.assertIs(self.order.state, OrderState.MATCHED)

    def test_terminal_state_detaches_remaining_handlers(self):
        self.lc.on(self.order.order_id, OrderState.MATCHED, lambda o: self.calls.append("matched"))
        self._note(OrderState.REGISTERED)
        self._note(OrderState.CANCELLED)
        self._note(OrderState.MATCHED)
        self.lc.drain()
        self.assertEqual(self.calls, [])
        self.assertIs(self.order.state, OrderState.CANCELLED)
        # Subscribing after the fact is a no-op.
        self.lc.on(self.order.order_id, OrderState.MATCHED, lambda o: self.calls.append("late"))
        self.assertEqual(self.calls, [])

    def test_observers_see_every_transition(self):
        seen = []
        self.lc.add_observer(lambda o: seen.append(o.state))
        self._note(OrderState.REGISTERED)
        self._note(OrderState.REJECTED, reason="no margin")
        self.lc.drain()
        self.assertEqual(seen, [OrderState.REGISTERED, OrderState.REJECTED])
        self.assertEqual(self.order.reason, "no margin")

    def test_failing_handler_does_not_stop_dispatch(self):
        def boom(_order):
            raise RuntimeError("handler failed")

        self.lc.on(self.order.order_id, OrderState.REGISTERED, boom)
        self.lc.on(self.order.order_id, OrderState.REGISTERED, lambda o: self.calls.append("after"))
        self._note(OrderState.REGISTERED)
        self.lc.drain()
        self.assertEqual(self.calls, ["after"])

    def test_unknown_order_is_dropped(self):
        self.lc.publish(OrderNotification("nope", OrderState.MATCHED))
        self.assertEqual(self.lc.drain(), 1)

    def test_has_pending_tracks_tag_and_state(self):
        entry = _order(tag=OrderTag.ENTER)
        self.lc.track(entry)
        self.assertTrue(self.lc.has_pending("RTS", OrderTag.ENTER))
        self.assertFalse(self.lc.has_pending("SI", OrderTag.ENTER))
        self.lc.publish(OrderNotification(entry.order_id, OrderState.REJECTED))
        self.lc.drain()
        self.assertFalse(self.lc.has_pending("RTS", OrderTag.ENTER))
        self.assertTrue(self.lc.has_pending("RTS", OrderTag.TIME_EXIT))

    def test_track_twice_raises(self):
        with self.assertRaises(ValueError):
            self.lc.track(self.order)

    def test_publish_from_other_thread(self):
        self.lc.on(self.order.order_id, OrderState.REGISTERED, lambda o: self.calls.append(threading.current_thread().name))
        t = threading.Thread(target=self._note, args=(OrderState.REGISTERED,), name="gateway")
        t.start()
        t.join()
        self.lc.drain()
        self.assertEqual(self.calls, [threading.current_thread().name])
