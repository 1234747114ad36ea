"""
Main entry point for the TaskFlow session client.

Command-line interface for signing in, signing out, renewing credentials and
inspecting the stored session.
"""

import os
import sys
import argparse
import asyncio
import getpass
import json
import logging
from typing import Optional, List

from taskflow_client.api_client import TaskflowAPIClient, RetryConfig
from taskflow_client.auth.session_manager import SessionManager
from taskflow_client.auth.token_storage import CredentialStore
from taskflow_client.config import ClientConfiguration
from taskflow_shared.exceptions import (
    TaskflowError, AuthenticationError, RenewalError, ConfigurationError,
    handle_exception
)
from taskflow_shared.logging_config import setup_logging, LogLevel, LogFormat
from taskflow_shared.models import LoginCredentials, LogoutReason

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_AUTH_FAILED = 2
EXIT_CONFIG_ERROR = 3
EXIT_NO_SESSION = 8
EXIT_INTERRUPTED = 130


def parse_arguments(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="taskflow-session",
        description="TaskFlow session client",
        epilog="""
Examples:
  %(prog)s --login me@example.com --remember   # Sign in and stay signed in
  %(prog)s --status                            # Show the current session
  %(prog)s --status --json                     # Session as JSON
  %(prog)s --refresh                           # Renew credentials now
  %(prog)s --logout                            # Sign out

The password for --login is read from TASKFLOW_PASSWORD or prompted for.
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    operation_group = parser.add_mutually_exclusive_group(required=True)
    operation_group.add_argument("--login", type=str, metavar="EMAIL",
                                 help="Sign in with the given email address")
    operation_group.add_argument("--logout", action="store_true",
                                 help="Sign out and clear stored credentials")
    operation_group.add_argument("--refresh", action="store_true",
                                 help="Renew the access credential now")
    operation_group.add_argument("--status", action="store_true",
                                 help="Show the current session")

    parser.add_argument("--remember", action="store_true",
                        help="Keep the session across restarts (with --login)")

    config_group = parser.add_argument_group('Configuration')
    config_group.add_argument("--config", type=str, metavar="FILE",
                              help="Path to configuration file")
    config_group.add_argument("--server-url", type=str, metavar="URL",
                              help="Override server URL")

    output_group = parser.add_argument_group('Output')
    output_group.add_argument("--json", action="store_true",
                              help="Output status in JSON format")

    debug_group = parser.add_argument_group('Debug')
    debug_group.add_argument("--debug", action="store_true",
                             help="Enable debug logging")
    debug_group.add_argument("--log-file", type=str, metavar="FILE",
                             help="Also log to this file")

    args = parser.parse_args(argv)

    if args.remember and not args.login:
        parser.error("--remember can only be used with --login")

    if args.json and not args.status:
        parser.error("--json can only be used with --status")

    return args


def configure_logging(args, config: ClientConfiguration) -> None:
    """Configure logging from configuration and command line arguments."""
    if args.debug:
        log_level = LogLevel.DEBUG
    elif args.json:
        log_level = LogLevel.ERROR
    else:
        try:
            log_level = LogLevel(str(config.get_log_level()).upper())
        except ValueError:
            log_level = LogLevel.INFO

    try:
        log_format = LogFormat(config.get_log_format())
    except ValueError:
        log_format = LogFormat.STANDARD
    if args.debug and log_format == LogFormat.STANDARD:
        log_format = LogFormat.DETAILED

    setup_logging(
        log_level=log_level,
        log_format=log_format,
        log_file=args.log_file or config.get_log_file()
    )


def read_password() -> str:
    password = os.environ.get('TASKFLOW_PASSWORD')
    if password:
        return password
    return getpass.getpass("Password: ")


def print_status(manager: SessionManager, as_json: bool) -> int:
    status = manager.current_state()

    if as_json:
        print(json.dumps(status.to_dict()))
        return EXIT_SUCCESS if status.identity else EXIT_NO_SESSION

    if status.identity is None:
        print("Status: signed out")
        if status.message:
            print(status.message)
        return EXIT_NO_SESSION

    print(f"Status: {status.state.value}")
    print(f"User: {status.identity.display_name} <{status.identity.email}>")
    print(f"Session: {status.session_id}")
    remaining = manager.time_until_expiry()
    print(f"Credential expires: {status.expires_at.isoformat()} (in {max(0, int(remaining.total_seconds()))}s)")
    print(f"Last activity: {status.last_activity.isoformat()}")
    if status.is_credential_expired:
        print("Credential renewal is due")
    return EXIT_SUCCESS


async def run_command(args, config: ClientConfiguration) -> int:
    """Restore the stored session, then run the requested operation."""
    retry_config = RetryConfig(
        max_retries=config.get_retry_attempts(),
        base_delay=config.get_retry_delay()
    )

    async with TaskflowAPIClient(
        config.get_server_url(),
        timeout=config.get_server_timeout(),
        retry_config=retry_config
    ) as api_client:
        store = CredentialStore.from_config(config)

        async with SessionManager(api_client, store, config=config) as manager:
            api_client.attach_session(manager)
            await manager.restore()

            if args.status:
                return print_status(manager, args.json)

            if args.login:
                credentials = LoginCredentials(
                    email=args.login,
                    password=read_password(),
                    remember_me=args.remember
                )
                try:
                    record = await manager.login(credentials)
                except AuthenticationError as e:
                    print(f"Login failed: {e.user_message}", file=sys.stderr)
                    return EXIT_AUTH_FAILED

                print(f"Signed in as {record.identity.display_name} <{record.identity.email}>")
                if store.is_degraded:
                    print("Warning: credentials could not be stored and will not survive this process",
                          file=sys.stderr)
                return EXIT_SUCCESS

            if args.logout:
                if manager.get_identity() is None:
                    print("Not signed in")
                    return EXIT_NO_SESSION
                await manager.logout(LogoutReason.MANUAL)
                print("Signed out")
                return EXIT_SUCCESS

            if args.refresh:
                if not manager.can_refresh():
                    print("Not signed in", file=sys.stderr)
                    return EXIT_NO_SESSION
                try:
                    credentials = await manager.refresh()
                except RenewalError as e:
                    print(f"Renewal failed: {e.user_message}", file=sys.stderr)
                    return EXIT_AUTH_FAILED
                print(f"Credentials renewed, valid until {credentials.expires_at.isoformat()}")
                return EXIT_SUCCESS

    return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the client."""
    args = parse_arguments(argv)

    try:
        config = ClientConfiguration(args.config)
        if args.server_url:
            config.set_override('server_url', args.server_url)
        configure_logging(args, config)
        return asyncio.run(run_command(args, config))

    except ConfigurationError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except TaskflowError as e:
        print(f"Error: {e.user_message}", file=sys.stderr)
        return EXIT_FAILED
    except KeyboardInterrupt:
        print("\nInterrupted by user", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        error = handle_exception(e, context={'operation': 'main'})
        print(f"Fatal error: {error.message}", file=sys.stderr)
        if not args.json:
            logger.exception("Fatal error in main")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
