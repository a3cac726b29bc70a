from __future__ import annotations

import argparse
import os
import sys

from civicportal.core.config import get_config
from civicportal.core.errors import IdentityError, PortalError
from civicportal.core.events import EventBus, EventLogger
from civicportal.core.events.models import (
    SESSION_ENDED,
    SESSION_STARTED,
    WARNING_CLEARED,
    WARNING_COUNTDOWN,
    WARNING_RAISED,
    BaseEvent,
)
from civicportal.core.identity.http import HttpIdentityAuthority, HttpProfileStore
from civicportal.core.logger import setup_logging
from civicportal.core.security_events import SecurityAuditLogger
from civicportal.core.session import (
    ActivitySignalHub,
    FingerprintGenerator,
    SessionLifecycleController,
    SessionStore,
)
from civicportal.core.session.fingerprint import LocalEnvironmentProbe
from civicportal.core.session.notices import format_countdown


def _print_event(ev: BaseEvent) -> None:
    p = ev.payload
    if ev.event_type == SESSION_STARTED:
        print(f"Signed in as {p.get('principal_id')} (role: {p.get('role') or 'unknown'}).")
    elif ev.event_type == WARNING_RAISED:
        print(f"\n{p.get('notice')}\nType 'extend' or press Enter to stay logged in.")
    elif ev.event_type == WARNING_COUNTDOWN:
        remaining = int(p.get("seconds_remaining") or 0)
        if remaining % 60 == 0 or remaining <= 10:
            print(f"Session expires in {format_countdown(remaining)}")
    elif ev.event_type == WARNING_CLEARED:
        print("Session extended.")
    elif ev.event_type == SESSION_ENDED:
        print(f"\n{p.get('notice')}")


def main() -> None:
    ap = argparse.ArgumentParser(description="Citizen portal session console")
    ap.add_argument("--root", default=".", help="Directory holding config/ and logs/.")
    ap.add_argument("--refresh-token-env", default=None, help="Override the env var holding the refresh token.")
    args = ap.parse_args()

    cm = get_config(root=args.root)
    cfg = cm.get()
    logger = setup_logging(os.path.join(args.root, cfg.logging.log_dir), cfg.logging.level)
    event_logger = EventLogger(os.path.join(args.root, cfg.logging.events_path))
    security_log = SecurityAuditLogger(os.path.join(args.root, cfg.logging.security_path))

    bus = EventBus(cfg=cfg.events, logger=logger.getChild("events"))
    bus.subscribe("session.*", _print_event)

    authority = HttpIdentityAuthority(
        token_url=cfg.identity.token_url,
        api_key=os.environ.get(cfg.identity.api_key_env, ""),
        revoke_url=cfg.identity.revoke_url,
        timeout_seconds=cfg.identity.request_timeout_seconds,
        logger=logger.getChild("identity"),
    )
    profiles = HttpProfileStore(
        base_url=cfg.identity.profiles_url,
        token_provider=authority.id_token,
        timeout_seconds=cfg.identity.request_timeout_seconds,
        logger=logger.getChild("profiles"),
    )
    signals = ActivitySignalHub(logger=logger.getChild("activity"))
    controller = SessionLifecycleController(
        authority,
        profiles,
        store=SessionStore(namespace=cfg.store.namespace, max_bytes=cfg.store.max_bytes, logger=logger.getChild("store")),
        fingerprints=FingerprintGenerator(
            LocalEnvironmentProbe(client_name=cfg.app.client_name, client_version=cfg.app.client_version),
            logger=logger.getChild("fingerprint"),
        ),
        signals=signals,
        event_bus=bus,
        event_logger=event_logger,
        security_log=security_log,
        logger=logger.getChild("session"),
    )
    controller.start()

    token_env = args.refresh_token_env or cfg.identity.refresh_token_env
    refresh_token = os.environ.get(token_env, "").strip()
    if not refresh_token:
        print(f"Set {token_env} to sign in.", file=sys.stderr)
        controller.close()
        bus.shutdown()
        sys.exit(2)
    try:
        authority.sign_in_with_refresh_token(refresh_token)
    except IdentityError as e:
        print(e.user_message, file=sys.stderr)
        controller.close()
        bus.shutdown()
        sys.exit(1)

    logger.info("Session console ready. Commands: status, extend, logout, quit. Any other input counts as activity.")

    try:
        while True:
            try:
                text = input("> ").strip()
            except EOFError:
                print()
                break
            except KeyboardInterrupt:
                print()
                break
            if text == "quit":
                break
            if text == "status":
                print(controller.snapshot().model_dump_json(indent=2))
                continue
            if text == "extend":
                if not controller.extend_session():
                    print("No active session.")
                continue
            if text == "logout":
                controller.logout()
                continue
            signals.emit("keydown")
    except PortalError as e:
        logger.error("Session console failed: %s", e.to_dict())
    finally:
        controller.close()
        bus.shutdown()


if __name__ == "__main__":
    main()
