"""CLI entry point for segterm."""

import argparse
import asyncio
import getpass
import json
import logging
import ssl
import sys
from pathlib import Path

from segterm import __version__
from segterm.config import Config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="segterm",
        description="PTY-backed terminal sessions addressed by segment id",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override configuration directory",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    sub = parser.add_subparsers(dest="command", required=True)

    # ── init ──────────────────────────────────────────────────────────
    init_p = sub.add_parser("init", help="Initialize server configuration")
    init_p.add_argument(
        "--hostname",
        default="localhost",
        help="Hostname for TLS certificate (default: localhost)",
    )
    init_p.add_argument(
        "--port", type=int, default=7930, help="Server port (default: 7930)"
    )
    init_p.add_argument(
        "--shell",
        default="",
        help="Shell for new sessions (default: $SHELL, then /bin/bash)",
    )
    init_p.add_argument(
        "--enable-totp",
        action="store_true",
        help="Enable TOTP two-factor authentication",
    )

    # ── server ────────────────────────────────────────────────────────
    server_p = sub.add_parser("server", help="Start the segterm server")
    server_p.add_argument("--host", default=None, help="Override bind address")
    server_p.add_argument("--port", type=int, default=None, help="Override port")

    # ── client commands ───────────────────────────────────────────────
    attach_p = sub.add_parser(
        "attach", help="Attach this terminal to a segment (Ctrl+] detaches)"
    )
    attach_p.add_argument("segment", help="Segment id")
    list_p = sub.add_parser("list", help="List live sessions")
    close_p = sub.add_parser("close", help="Close a segment's session")
    close_p.add_argument("segment", help="Segment id")
    for p in (attach_p, list_p, close_p):
        _add_connection_args(p)

    # ── maintenance ───────────────────────────────────────────────────
    sub.add_parser("totp-setup", help="Enable or reset TOTP two-factor authentication")
    sub.add_parser("change-password", help="Change the server password")
    sub.add_parser(
        "show-fingerprint",
        help="Show the TLS certificate fingerprint (for client pinning)",
    )

    args = parser.parse_args(argv)
    config_dir = Config.config_dir(args.config_dir)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        _cmd_init(args, config_dir)
    elif args.command == "server":
        _cmd_server(args, config_dir)
    elif args.command in ("attach", "list", "close"):
        _cmd_client(args, config_dir)
    elif args.command == "totp-setup":
        _cmd_totp_setup(config_dir)
    elif args.command == "change-password":
        _cmd_change_password(config_dir)
    elif args.command == "show-fingerprint":
        _cmd_show_fingerprint(config_dir)


def _add_connection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--host", default=None, help="Server hostname or IP")
    p.add_argument("--port", type=int, default=None, help="Server port")
    p.add_argument(
        "--fingerprint",
        default=None,
        help="Expected TLS certificate fingerprint for pinning",
    )
    p.add_argument(
        "--ca-cert",
        type=Path,
        default=None,
        help="Path to CA certificate for verification",
    )
    p.add_argument(
        "--totp",
        default=None,
        help="TOTP code (prompted interactively if omitted)",
    )


def _load_initialized(config_dir: Path) -> Config:
    config = Config.load(config_dir)
    if not config.server.password_hash:
        print("Server not initialized. Run 'segterm init' first.", file=sys.stderr)
        sys.exit(1)
    return config


def _prompt_new_password(first_prompt: str) -> str:
    while True:
        pw = getpass.getpass(first_prompt)
        if len(pw) < 8:
            print("Password must be at least 8 characters.")
            continue
        if pw != getpass.getpass("Confirm password: "):
            print("Passwords do not match.")
            continue
        return pw


def _show_totp(secret: str) -> None:
    from segterm.auth import totp_provisioning_uri

    uri = totp_provisioning_uri(secret)
    print("\n=== TOTP Two-Factor Authentication ===")
    print(f"Secret key: {secret}")
    print(f"Provisioning URI: {uri}")
    try:
        import qrcode
    except ImportError:
        print("(Install 'qrcode' package for QR code display)")
        return
    qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_L)
    qr.add_data(uri)
    qr.make(fit=True)
    print("\nScan this QR code with your authenticator app:")
    qr.print_ascii(invert=True)


# ── Command implementations ──────────────────────────────────────────────


def _cmd_init(args: argparse.Namespace, config_dir: Path) -> None:
    from segterm.auth import generate_totp_secret, hash_password
    from segterm.tls import generate_self_signed_cert

    print("=== segterm Initialization ===\n")
    pw_hash = hash_password(_prompt_new_password("Set server password: "))

    cert_path = Config.cert_path(config_dir)
    key_path = Config.key_path(config_dir)
    print(f"\nGenerating TLS certificate for '{args.hostname}'...")
    fingerprint = generate_self_signed_cert(cert_path, key_path, hostname=args.hostname)
    print(f"  Certificate: {cert_path}")
    print(f"  Private key: {key_path}")
    print(f"  Fingerprint: {fingerprint}")

    totp_secret = ""
    if args.enable_totp:
        totp_secret = generate_totp_secret()
        _show_totp(totp_secret)

    config = Config.load(config_dir)
    config.server.port = args.port
    config.server.password_hash = pw_hash
    config.server.totp_secret = totp_secret
    config.server.totp_enabled = args.enable_totp
    config.server.cert_fingerprint = fingerprint
    config.terminal.shell = args.shell
    config.client.server_port = args.port
    config.client.cert_fingerprint = fingerprint

    config_file = config.save(config_dir)
    print(f"\nConfiguration saved to: {config_file}")
    print("\nTo start the server:  segterm server")
    print("To open a terminal:   segterm attach <segment>")


def _cmd_server(args: argparse.Namespace, config_dir: Path) -> None:
    from segterm.server import TerminalServer

    config = _load_initialized(config_dir)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port

    server = TerminalServer(config, config_dir)
    try:
        asyncio.run(server.serve())
    except KeyboardInterrupt:
        print("\nServer stopped.")


def _cmd_client(args: argparse.Namespace, config_dir: Path) -> None:
    from segterm.client import AuthenticationFailed, RequestFailed

    config = Config.load(config_dir)
    totp_code = args.totp
    if totp_code is None:
        totp_code = input("TOTP code (leave empty if not enabled): ").strip()
    password = getpass.getpass("Password: ")

    try:
        asyncio.run(_run_client(args, config, password, totp_code))
    except KeyboardInterrupt:
        print("\nDisconnected.")
    except AuthenticationFailed as e:
        print(f"Authentication failed: {e}", file=sys.stderr)
        sys.exit(1)
    except RequestFailed as e:
        print(f"Request failed: {e.message}", file=sys.stderr)
        sys.exit(1)
    except ConnectionRefusedError:
        print("Connection refused.", file=sys.stderr)
        sys.exit(1)
    except ssl.SSLError as e:
        print(f"TLS error: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Connection error: {e}", file=sys.stderr)
        sys.exit(1)


async def _run_client(
    args: argparse.Namespace, config: Config, password: str, totp_code: str
) -> None:
    from segterm.client import TerminalClient, attach

    cc = config.client
    ca_cert = args.ca_cert or (Path(cc.ca_cert_path) if cc.ca_cert_path else None)
    client = await TerminalClient.connect(
        host=args.host or cc.server_host,
        port=args.port or cc.server_port,
        password=password,
        totp_code=totp_code,
        fingerprint=args.fingerprint or cc.cert_fingerprint or None,
        ca_cert=ca_cert,
    )
    async with client:
        if args.command == "list":
            print(json.dumps(await client.list_sessions(), indent=2))
        elif args.command == "close":
            closed = await client.close_segment(args.segment)
            print("Closed." if closed else "No such session.")
        else:
            print(f"Attached to '{args.segment}'. Press Ctrl+] to detach.\r")
            exit_code = await attach(client, args.segment)
            if exit_code is not None:
                print(f"\nShell exited with code {exit_code}.")
            else:
                print("\nDetached.")


def _cmd_totp_setup(config_dir: Path) -> None:
    from segterm.auth import generate_totp_secret, verify_password, verify_totp

    config = _load_initialized(config_dir)

    pw = getpass.getpass("Current password (to confirm identity): ")
    if not verify_password(config.server.password_hash, pw):
        print("Incorrect password.", file=sys.stderr)
        sys.exit(1)

    secret = generate_totp_secret()
    _show_totp(secret)

    print()
    code = input("Enter a TOTP code to verify setup: ").strip()
    if not verify_totp(secret, code):
        print("Invalid code. TOTP not enabled.", file=sys.stderr)
        sys.exit(1)

    config.server.totp_secret = secret
    config.server.totp_enabled = True
    config.save(config_dir)
    print("TOTP enabled successfully.")


def _cmd_change_password(config_dir: Path) -> None:
    from segterm.auth import hash_password, verify_password

    config = _load_initialized(config_dir)

    old_pw = getpass.getpass("Current password: ")
    if not verify_password(config.server.password_hash, old_pw):
        print("Incorrect password.", file=sys.stderr)
        sys.exit(1)

    config.server.password_hash = hash_password(_prompt_new_password("New password: "))
    config.save(config_dir)
    print("Password changed successfully.")


def _cmd_show_fingerprint(config_dir: Path) -> None:
    cert_path = Config.cert_path(config_dir)
    if not cert_path.exists():
        print("No certificate found. Run 'segterm init' first.", file=sys.stderr)
        sys.exit(1)

    from segterm.tls import get_cert_fingerprint
    fp = get_cert_fingerprint(cert_path)
    print(f"TLS Certificate Fingerprint (SHA-256):\n  {fp}")
    print(f"\nUse this with the client:  segterm attach <segment> --fingerprint \"{fp}\"")


if __name__ == "__main__":
    main()
