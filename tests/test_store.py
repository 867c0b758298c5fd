"""
Unit tests for the envelope store and its priority ready queue.
"""
import unittest

from msgbroker.envelope import Envelope, EnvelopeState, body_size
from msgbroker.store import ReadyQueue, EnvelopeStore


class TestReadyQueue(unittest.TestCase):
    """Test cases for ReadyQueue ordering"""
    
    def setUp(self):
        self.queue = ReadyQueue()
    
    def test_empty_queue(self):
        self.assertEqual(len(self.queue), 0)
        self.assertIsNone(self.queue.pop())
        self.assertIsNone(self.queue.peek())
    
    def test_priority_then_fifo(self):
        """Priorities [1, 5, 1, 5] come out as p5#1, p5#2, p1#1, p1#2"""
        envelopes = [Envelope(body=f"m{i}", priority=p) for i, p in enumerate([1, 5, 1, 5])]
        for envelope in envelopes:
            self.queue.push(envelope)
        
        popped = [self.queue.pop().body for _ in range(4)]
        
        self.assertEqual(popped, ["m1", "m3", "m0", "m2"])
        self.assertEqual(len(self.queue), 0)
    
    def test_push_front_goes_ahead_of_its_tier_only(self):
        self.queue.push(Envelope(body="high", priority=9))
        self.queue.push(Envelope(body="normal-1", priority=0))
        self.queue.push_front(Envelope(body="retry", priority=0))
        
        popped = [self.queue.pop().body for _ in range(3)]
        
        self.assertEqual(popped, ["high", "retry", "normal-1"])
    
    def test_negative_priorities(self):
        self.queue.push(Envelope(body="low", priority=-3))
        self.queue.push(Envelope(body="default", priority=0))
        
        self.assertEqual(self.queue.pop().body, "default")
        self.assertEqual(self.queue.pop().body, "low")
    
    def test_peek_does_not_consume(self):
        self.queue.push(Envelope(body="a"))
        
        self.assertEqual(self.queue.peek().body, "a")
        self.assertEqual(len(self.queue), 1)
    
    def test_iteration_matches_pop_order(self):
        for i, priority in enumerate([2, 0, 2, 7]):
            self.queue.push(Envelope(body=i, priority=priority))
        
        listed = [envelope.body for envelope in self.queue]
        popped = [self.queue.pop().body for _ in range(4)]
        
        self.assertEqual(listed, popped)
    
    def test_tier_is_recreated_after_emptying(self):
        self.queue.push(Envelope(body="a", priority=4))
        self.queue.pop()
        self.queue.push(Envelope(body="b", priority=4))
        self.queue.push(Envelope(body="c", priority=1))
        
        self.assertEqual(self.queue.pop().body, "b")
        self.assertEqual(self.queue.pop().body, "c")


class TestEnvelopeStore(unittest.TestCase):
    """Test cases for EnvelopeStore bookkeeping"""
    
    def test_acked_history_is_bounded(self):
        store = EnvelopeStore(acked_history=3)
        for i in range(5):
            store.remember_acked(f"id-{i}")
        
        self.assertEqual(list(store.acked), ["id-2", "id-3", "id-4"])
    
    def test_get_or_create_topic(self):
        store = EnvelopeStore()
        topic = store.get_or_create_topic("orders")
        
        self.assertIs(store.get_or_create_topic("orders"), topic)
        self.assertEqual(topic.subscriptions, {})


class TestEnvelope(unittest.TestCase):
    """Test cases for the envelope model"""
    
    def test_new_envelope_defaults(self):
        envelope = Envelope(body=b"x")
        self.assertEqual(envelope.state, EnvelopeState.READY)
        self.assertEqual(envelope.attempts, 0)
        self.assertTrue(envelope.id)
    
    def test_ids_are_unique(self):
        ids = {Envelope(body=None).id for _ in range(1000)}
        self.assertEqual(len(ids), 1000)
    
    def test_snapshot_is_independent(self):
        envelope = Envelope(body="x")
        copy = envelope.snapshot()
        copy.attempts = 99
        self.assertEqual(envelope.attempts, 0)
    
    def test_terminal_states(self):
        self.assertTrue(EnvelopeState.ACKED.terminal)
        self.assertTrue(EnvelopeState.DEAD_LETTERED.terminal)
        self.assertFalse(EnvelopeState.READY.terminal)
        self.assertFalse(EnvelopeState.IN_FLIGHT.terminal)
    
    def test_body_size(self):
        self.assertEqual(body_size(b"abc"), 3)
        self.assertEqual(body_size("é"), 2)
        self.assertIsNone(body_size({"a": 1}))


if __name__ == '__main__':
    unittest.main()
