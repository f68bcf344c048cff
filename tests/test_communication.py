from dpgo_common.geometry import LiftedPose
from dpgo_common.models import AgentStatus, PoseID
from dpgo_decentralised.communication import PeerToPeerBus, PoseMessage, StatusMessage, WeightMessage


def test_messages_are_delivered_in_order():
    bus = PeerToPeerBus()
    poses = {PoseID(0, 1): LiftedPose.identity(2, 2)}
    bus.broadcast_poses(0, [1, 2], poses, iteration=3)
    bus.post(WeightMessage(sender=0, receiver=1, weights={(PoseID(0, 1), PoseID(1, 0)): 0.5}))
    assert bus.pending_counts == {1: 2, 2: 1}

    msgs = bus.drain(1)
    assert isinstance(msgs[0], PoseMessage) and isinstance(msgs[1], WeightMessage)
    assert msgs[0].poses == poses
    assert msgs[0].poses is not poses
    assert bus.drain(1) == []
    assert bus.delivered == 2


def test_status_broadcast_skips_sender():
    bus = PeerToPeerBus()
    bus.broadcast_status(1, [0, 1, 2], AgentStatus(agent_id=1))
    assert bus.drain(1) == []
    msgs = bus.drain(0)
    assert len(msgs) == 1 and isinstance(msgs[0], StatusMessage)
    assert msgs[0].status.agent_id == 1
