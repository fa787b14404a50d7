from ircharness import LineBuffer


def test_append_keeps_arrival_order():
    buf = LineBuffer()
    for line in ("one", "two", "three"):
        buf.append(line)
    assert buf.snapshot() == ["one", "two", "three"]
    assert len(buf) == 3


def test_snapshot_is_a_copy():
    buf = LineBuffer()
    buf.append("one")
    snap = buf.snapshot()
    buf.append("two")
    snap.append("mine")
    assert snap == ["one", "mine"]
    assert buf.snapshot() == ["one", "two"]


def test_clear_discards_history_but_not_old_snapshots():
    buf = LineBuffer()
    buf.append("a")
    snap = buf.snapshot()
    buf.clear()
    assert buf.snapshot() == []
    assert snap == ["a"]


def test_tail():
    buf = LineBuffer()
    for i in range(25):
        buf.append(f"line {i}")
    assert buf.tail(20) == [f"line {i}" for i in range(5, 25)]
    assert buf.tail(0) == []
    assert LineBuffer().tail(5) == []
