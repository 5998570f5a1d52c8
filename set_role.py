# -*- coding: utf-8 -*-
# set_role.py  (lives in the backend root, next to main.py)
"""
Set a user's role in the subscription store, or run the expiry sweep.

Usage:
  DATA_DIR=/var/data python set_role.py --user-id 123456789 --role vip
  python set_role.py --user-id 123456789 --role trial --trial-days 14
  python set_role.py --sweep
"""

import argparse
import sys

from db import default_data_dir, utcnow
from models import Role
from user_store import UserNotFound, UserStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--data-dir", default=None, help="store root (defaults to DATA_DIR, then HOME)")
    parser.add_argument("--user-id", type=int)
    parser.add_argument("--role", choices=[r.value for r in Role])
    parser.add_argument("--trial-days", type=int, default=None)
    parser.add_argument("--sweep", action="store_true", help="expire lapsed trials and subscriptions")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.sweep and (args.user_id is None or args.role is None):
        parser.error("--user-id and --role are required unless --sweep is given")

    store = UserStore(args.data_dir or default_data_dir())
    try:
        store.ensure_schema()
        if args.sweep:
            now = utcnow()
            trials = store.sweep_expired_trials(now)
            subs = store.sweep_expired_subscriptions(now)
            print(f"OK: expired {trials} trial(s), {subs} subscription(s)")
            return 0

        try:
            user = store.set_role(args.user_id, Role(args.role), trial_days=args.trial_days)
        except UserNotFound:
            print(f"User not found: {args.user_id}", file=sys.stderr)
            return 1
        print(f"OK: {user.id} -> role={user.role.value}")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    raise SystemExit(main())
