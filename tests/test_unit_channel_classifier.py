import pytest
from postback_relay.services.channel_classifier import ChannelClassifier


def test_target_membership_is_fail_closed():
    channels = ChannelClassifier()
    assert channels.is_target_channel(9)
    assert channels.is_target_channel("16")
    assert not channels.is_target_channel(2)  # ignored (Google)
    assert not channels.is_target_channel(99)
    assert not channels.is_target_channel(None)
    assert not channels.is_target_channel("abc")
    assert not channels.is_target_channel(True)


def test_names_with_placeholder_for_unknown():
    channels = ChannelClassifier()
    assert channels.name(9) == "PWA Market"
    assert channels.name(99) == "Unknown Channel (id=99)"
    assert channels.name(None) == "Unknown Channel (id=None)"


def test_describe_and_overlap_rejected():
    channels = ChannelClassifier(target_ids={5}, ignored_ids={2}, names={2: "Google"})
    info = channels.describe(2)
    assert info.is_ignored and not info.is_target and info.name == "Google"
    assert channels.as_dict()["target_ids"] == [5]
    with pytest.raises(ValueError):
        ChannelClassifier(target_ids={2, 3}, ignored_ids={2}, names={})
