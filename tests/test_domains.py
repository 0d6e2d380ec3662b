"""Domain planning and dispatch tests."""
from __future__ import annotations

from cmctl.codec import SecretCodec
from cmctl.reconcile.coordinator import BusyStateCoordinator
from cmctl.reconcile.dispatch import GatewayDispatcher
from cmctl.reconcile.domains import plan_domains, verification_record
from cmctl.reconcile.models import (
    ActionKind,
    DesiredDomain,
    FailureCause,
    RemoteDomain,
    RemoteError,
    RemoteErrorKind,
    ResultStatus,
)


def _domain(name: str) -> DesiredDomain:
    return DesiredDomain(program_id=1, environment_id=2, name=name, certificate_id=42)


def test_existing_domains_are_skipped() -> None:
    """Domains already registered are skipped."""
    remote = [RemoteDomain(id=9, name="www.example.com", status="VERIFIED")]

    actions = plan_domains([_domain("www.example.com"), _domain("api.example.com")], remote)

    assert [action.kind for action in actions] == [ActionKind.SKIP, ActionKind.CREATE]
    assert actions[0].reason == "already exists"
    assert actions[1].identifier == "domain api.example.com"


def test_verification_record_format() -> None:
    """The TXT record embeds domain, program, environment and a uuid."""
    record = verification_record("www.example.com", 1, 2, "abc")

    assert record == "adobe-aem-verification=www.example.com/1/2/abc"


def test_create_domain_payload(fake_gateway) -> None:
    """Create payloads carry the verification record."""
    dispatcher = GatewayDispatcher(fake_gateway, SecretCodec(None), token_factory=lambda: "tok")
    coordinator = BusyStateCoordinator(fake_gateway, dispatcher, poll_interval=0)
    (action,) = plan_domains([_domain("www.example.com")], [])

    result = coordinator.apply(action, ci_mode=False)

    assert result.status is ResultStatus.SUCCEEDED
    assert fake_gateway.readiness_calls == 0
    ((_, program_id, payload),) = fake_gateway.calls_to("create_domain")
    assert program_id == 1
    assert payload.to_json() == {
        "name": "www.example.com",
        "dnsTxtRecord": "adobe-aem-verification=www.example.com/1/2/tok",
        "environmentId": 2,
        "certificateId": 42,
        "dnsZone": "adobe.com.",
    }


def test_already_in_use_domain_fails_and_batch_continues(fake_gateway) -> None:
    """A domain in use elsewhere fails while the others are created."""
    fake_gateway.failures["create_domain"] = RemoteError(
        "Domain name already in use",
        kind=RemoteErrorKind.ALREADY_IN_USE,
    )
    dispatcher = GatewayDispatcher(fake_gateway, SecretCodec(None))
    coordinator = BusyStateCoordinator(fake_gateway, dispatcher, poll_interval=0)
    actions = plan_domains([_domain("a.example.com"), _domain("b.example.com")], [])

    results = [coordinator.apply(action, ci_mode=False) for action in actions]

    assert [result.cause for result in results] == [FailureCause.ALREADY_IN_USE] * 2
    assert len(fake_gateway.calls_to("create_domain")) == 2
