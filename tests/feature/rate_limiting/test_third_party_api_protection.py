import pytest

PARAMS = {"capacity": 10, "refill_rate": 2}


def call_upstream(service, node_id):
    return service.check(
        "payments-gateway",
        strategy="distributed_token_bucket",
        context={"node_id": node_id},
        params=PARAMS,
    )


def test_upstream_quota_shared_across_nodes(service, clock):
    """Test that several application nodes together never exceed the upstream's quota.
    The payment provider accepts a burst of 10 and 2 requests per second after that.
    Based on Scenario 3: Protecting a Third-Party API.
    """
    nodes = ["node-a", "node-b"]
    decisions = [call_upstream(service, nodes[i % 2]) for i in range(20)]

    allowed_by_node = {node: 0 for node in nodes}
    for i, decision in enumerate(decisions):
        if decision.allowed:
            allowed_by_node[nodes[i % 2]] += 1

    assert sum(allowed_by_node.values()) == 10, "The burst capacity is shared"
    assert all(count > 0 for count in allowed_by_node.values()), "No node is starved"
    assert decisions[-1].remaining == 0
    assert decisions[-1].retry_after == 1

    clock.advance(seconds=1)
    later = [call_upstream(service, nodes[i % 2]) for i in range(10)]

    assert sum(d.allowed for d in later) == 2, "One second refills two requests"


def test_node_identity_reported(service):
    decision = call_upstream(service, "node-a")

    assert decision.metadata["node_id"] == "node-a"
    assert decision.limit == 10
    assert decision.remaining == 9


def test_store_outage_fails_closed(service_factory, broken_store):
    """Test that an outage never lets unmetered traffic through to the provider."""
    service = service_factory(target_store=broken_store, fail_open=False)

    decision = call_upstream(service, "node-a")

    assert not decision.allowed
    assert decision.error_code == 503
    assert decision.degraded


@pytest.mark.asyncio
async def test_async_nodes_share_quota(async_service):
    decisions = [
        await async_service.check_async(
            "search-provider",
            strategy="distributed_token_bucket",
            context={"node_id": f"node-{i % 3}"},
            params={"capacity": 6, "refill_rate": 1},
        )
        for i in range(12)
    ]

    assert sum(d.allowed for d in decisions) == 6
