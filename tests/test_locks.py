"""
Keyed Lock Tests

Work on one key is serialized. The lock map is empty once nobody holds
or waits on a key.
"""

import threading

from guard.locks import KeyedLock


class TestKeyedLock:

    def test_entry_dropped_after_release(self):
        locks = KeyedLock()
        with locks.hold("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    def test_entry_dropped_when_body_raises(self):
        locks = KeyedLock()
        try:
            with locks.hold("a"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert len(locks) == 0

    def test_same_key_is_serialized(self):
        locks = KeyedLock()
        inside = threading.Event()
        release = threading.Event()
        order = []

        def first():
            with locks.hold("k"):
                inside.set()
                release.wait(2.0)
                order.append("first")

        def second():
            with locks.hold("k"):
                order.append("second")

        t1 = threading.Thread(target=first)
        t1.start()
        assert inside.wait(2.0)
        t2 = threading.Thread(target=second)
        t2.start()
        t2.join(0.1)
        assert order == []

        release.set()
        t1.join()
        t2.join()
        assert order == ["first", "second"]
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        with locks.hold("a"):
            done = threading.Event()

            def other():
                with locks.hold("b"):
                    done.set()

            worker = threading.Thread(target=other)
            worker.start()
            assert done.wait(2.0)
            worker.join()
