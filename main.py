#!/usr/bin/env python3
"""
Drive Watch - Upload new files from a local folder to Google Drive
"""
import os
import argparse
from drive_watch import (
    DriveWatchSync,
    SyncConfig,
    AuthError,
    TokenFileError,
    WatchPathError,
    TOKEN_FILE,
    MAX_WORKERS,
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Watch a local folder and upload new files to a Google Drive folder'
    )
    parser.add_argument(
        '--client-id',
        default=os.environ.get('GOOGLE_CLIENT_ID'),
        help='OAuth client ID (default: $GOOGLE_CLIENT_ID)'
    )
    parser.add_argument(
        '--client-secret',
        default=os.environ.get('GOOGLE_CLIENT_SECRET'),
        help='OAuth client secret (default: $GOOGLE_CLIENT_SECRET)'
    )
    parser.add_argument(
        '--redirect-uri',
        default=os.environ.get('GOOGLE_REDIRECT_URI'),
        help='OAuth redirect URI (default: $GOOGLE_REDIRECT_URI)'
    )
    parser.add_argument(
        '--folder-id',
        default=os.environ.get('DRIVE_FOLDER_ID'),
        help='Destination Drive folder ID (default: $DRIVE_FOLDER_ID)'
    )
    parser.add_argument(
        '--watch-path',
        default=os.environ.get('WATCH_PATH'),
        help='Local directory to watch (default: $WATCH_PATH)'
    )
    parser.add_argument(
        '--token-file',
        default=TOKEN_FILE,
        help=f'Where the OAuth token is stored (default: {TOKEN_FILE})'
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        default=MAX_WORKERS,
        help=f'Max parallel uploads (default: {MAX_WORKERS})'
    )
    parser.add_argument(
        '--ignore-existing',
        action='store_true',
        help='Only upload files created after monitoring starts'
    )
    return parser


def parse_config(argv=None) -> SyncConfig:
    parser = build_parser()
    args = parser.parse_args(argv)

    missing = [
        '--' + name.replace('_', '-')
        for name in ('client_id', 'client_secret', 'redirect_uri', 'folder_id', 'watch_path')
        if not getattr(args, name)
    ]
    if missing:
        parser.error(f"missing required settings: {', '.join(missing)}")
    if args.max_workers < 1:
        parser.error("--max-workers must be at least 1")

    return SyncConfig(
        client_id=args.client_id,
        client_secret=args.client_secret,
        redirect_uri=args.redirect_uri,
        folder_id=args.folder_id,
        watch_path=args.watch_path,
        token_path=args.token_file,
        max_workers=args.max_workers,
        upload_existing=not args.ignore_existing,
    )


def main(argv=None):
    config = parse_config(argv)

    try:
        DriveWatchSync(config).run()
    except AuthError as e:
        print(f"\n❌ Authorization failed: {e}")
        return 1
    except TokenFileError as e:
        print(f"\n❌ Error: {e}")
        return 1
    except WatchPathError as e:
        print(f"\n❌ Error: {e}")
        print("\nPlease ensure the watch path exists and is a directory.")
        return 1
    except KeyboardInterrupt:
        print("\n\n👋 Goodbye!")
        return 0
    except Exception as e:
        print(f"\n❌ Unexpected error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    exit(main())
