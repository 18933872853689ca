from rsacomm.client.peers import PeerDirectory
from rsacomm.common.messages import PeerInfo

KA, KB = b"a" * 32, b"b" * 32


def test_incoming_key_is_adopted_without_an_offer():
    peers = PeerDirectory()
    peers.add("bob")
    assert peers.accept_key("bob", KB, keep_offer=True) == KB
    assert peers.get("bob").key == KB


def test_collision_keeps_the_winning_offer_on_both_sides():
    alice_view, bob_view = PeerDirectory(), PeerDirectory()
    assert alice_view.offer_key("bob", KA) == (KA, True)
    assert bob_view.offer_key("alice", KB) == (KB, True)

    # "alice" < "bob": alice keeps hers, bob gives way
    assert alice_view.accept_key("bob", KB, keep_offer=True) == KA
    assert bob_view.accept_key("alice", KA, keep_offer=False) == KA

    alice_bob = alice_view.get("bob")
    assert (alice_bob.key, alice_bob.retired, alice_bob.offered) == (KA, KB, False)
    assert bob_view.get("alice").key == KA


def test_offer_gives_way_to_a_key_already_received():
    peers = PeerDirectory()
    peers.accept_key("bob", KB, keep_offer=False)
    assert peers.offer_key("bob", KA) == (KB, False)
    assert not peers.get("bob").offered


def test_confirm_clears_the_offer():
    peers = PeerDirectory()
    peers.offer_key("bob", KA)
    peers.confirm_key("bob")
    # a later key from bob replaces ours instead of losing the tie-break
    assert peers.accept_key("bob", KB, keep_offer=True) == KB


def test_user_list_keeps_negotiated_keys():
    peers = PeerDirectory()
    peers.offer_key("bob", KA)
    peers.set_public_key("carol", "PEM-C")
    peers.replace({"bob": PeerInfo(public_key="PEM-B"), "dave": PeerInfo()})
    bob = peers.get("bob")
    assert (bob.public_key, bob.key, bob.offered) == ("PEM-B", KA, True)
    assert peers.names() == ["bob", "dave"]
    assert peers.snapshot()["bob"].has_key
