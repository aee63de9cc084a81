from cidlistener.chunker import CidsChunk
from cidlistener.cid_queue import CidNode, CidQueue
from cidlistener.cids import RAW, identity_multihash, make_cid


def new_cid(text):
    return make_cid(RAW, identity_multihash(text.encode()))


def cids_of(nodes):
    return [n.cid for n in nodes]


def test_newest_first_order():
    q = CidQueue()
    c1, c2, c3 = new_cid("test1"), new_cid("test2"), new_cid("test3")
    for i, c in enumerate((c1, c2, c3)):
        q.record(CidNode(c, float(i)))
    assert cids_of(q) == [c3, c2, c1]
    assert cids_of(q.oldest_first()) == [c1, c2, c3]
    assert len(q) == 3


def test_rerecord_moves_to_front_and_keeps_node():
    q = CidQueue()
    c1, c2, c3 = new_cid("test1"), new_cid("test2"), new_cid("test3")
    chunk = CidsChunk(context_id=b"x")
    first = q.record(CidNode(c2, 1.0, chunk))
    q.record(CidNode(c1, 0.5))
    q.record(CidNode(c3, 2.0))
    returned = q.record(CidNode(c2, 5.0))
    assert returned is first
    assert returned.timestamp == 5.0
    assert returned.chunk is chunk
    assert cids_of(q) == [c2, c3, c1]
    assert len(q) == 3


def test_remove_and_get():
    q = CidQueue()
    c1 = new_cid("test1")
    q.record(CidNode(c1, 1.0))
    assert q.get(c1).cid == c1
    q.remove(c1)
    assert q.get(c1) is None
    assert len(q) == 0
    q.remove(c1)
    assert len(q) == 0


def test_assign_chunk():
    q = CidQueue()
    c1, c2 = new_cid("test1"), new_cid("test2")
    q.record(CidNode(c1, 1.0))
    chunk = CidsChunk(context_id=b"ctx")
    q.assign_chunk(c1, chunk)
    q.assign_chunk(c2, chunk)
    assert q.get(c1).chunk is chunk
    assert q.get(c2) is None


def test_snapshot_holds_all_nodes():
    q = CidQueue()
    cids = [new_cid(f"test{i}") for i in range(5)]
    for i, c in enumerate(cids):
        q.record(CidNode(c, float(i)))
    snap = q.timestamps_snapshot()
    assert {n.cid for n in snap} == set(cids)
    assert len(snap) == len(q)


def test_removal_during_oldest_first_iteration():
    q = CidQueue()
    cids = [new_cid(f"test{i}") for i in range(4)]
    for i, c in enumerate(cids):
        q.record(CidNode(c, float(i)))
    for node in q.oldest_first():
        if node.timestamp < 2:
            q.remove(node.cid)
    assert cids_of(q) == [cids[3], cids[2]]