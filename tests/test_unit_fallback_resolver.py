from postback_relay.services.fallback_resolver import FallbackResolver


def test_known_tokens_resolve_case_insensitively():
    resolver = FallbackResolver()
    binding = resolver.resolve(" BettiTLTR ")
    assert binding is not None
    assert binding.channel_id == 9
    assert binding.channel_name == "PWA Market"
    assert resolver.resolve("pwa.partners").channel_id == 16


def test_unknown_tokens_never_guessed():
    resolver = FallbackResolver()
    assert resolver.resolve("pwa") is None
    assert resolver.resolve("") is None
    assert resolver.resolve(None) is None
    assert resolver.known_tokens == ["bettitltr", "pwa.partners"]


def test_channel_mapping_queries():
    resolver = FallbackResolver({"Src": {"channel_name": "Five", "channel_id": 5}})
    assert resolver.has_mapping_for_channel(5)
    assert not resolver.has_mapping_for_channel(9)
    assert not resolver.has_mapping_for_channel(None)
    assert resolver.as_dict() == {"src": {"channel_name": "Five", "channel_id": 5}}
