import unittest

from brokerprobe.abstractions.connection import BrokerConnection, ProbeChannel
from brokerprobe.abstractions.probe_operation import ProbeOperation


class TestBrokerConnectionAbstraction(unittest.TestCase):
    def test_cannot_instantiate_abstract(self):
        with self.assertRaises(TypeError):
            BrokerConnection()
        with self.assertRaises(TypeError):
            ProbeChannel()

    def test_subclass_must_implement_methods(self):
        class DummyChannel(ProbeChannel):
            async def close(self):
                return None

        class DummyConnection(BrokerConnection):
            @property
            def is_closed(self):
                return False

            async def open_channel(self):
                return DummyChannel()

        conn = DummyConnection()
        self.assertFalse(conn.is_closed)


class TestProbeOperationAbstraction(unittest.TestCase):
    def test_cannot_instantiate_abstract(self):
        with self.assertRaises(TypeError):
            ProbeOperation()

    def test_subclass_keeps_timeout_and_kind(self):
        class NoopProbe(ProbeOperation):
            kind = "noop"

            async def _perform(self, connection):
                return None

        op = NoopProbe(timeout=1.5)
        self.assertEqual(op.timeout, 1.5)
        self.assertEqual(op.kind, "noop")
        self.assertIn("kind=noop", repr(op))


if __name__ == "__main__":
    unittest.main()
