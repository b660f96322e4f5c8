#!/usr/bin/env python3
"""
aws_unused_ami_finder.py

Purpose:
  Report AMIs that are not referenced by any instance launched within an age
  window, restricted to images whose name matches a pattern. Use it to find
  stale images that are candidates for deregistration. Read-only.

Logic:
  1. List instances (all pages) in the selected states and keep those launched
     within --age days.
  2. Build the set of ImageIds they reference.
  3. List images (all pages) owned by --owner whose name matches --pattern.
  4. Report images whose ImageId is not in the set.

Pattern matching:
  - A plain token (no * or ?) matches any name containing it: "web" matches
    "web-base" and "old-web-1".
  - A pattern with * or ? is a glob over the whole name: "web-*" matches
    "web-base" but not "old-web-1".

Permissions Required:
  - ec2:DescribeInstances, ec2:DescribeImages

Examples:
  python aws_unused_ami_finder.py --pattern web --region us-east-1
  python aws_unused_ami_finder.py --pattern 'base-*' --age 30 --json
  python aws_unused_ami_finder.py --profile prod --show-instances

Exit Codes:
  0 success
  1 AWS API error or unexpected error
  2 configuration / usage error
  130 interrupted
"""
from __future__ import annotations
import argparse
import datetime as dt
import fnmatch
import json
import sys
from typing import Any, Dict, Iterable, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

DEFAULT_REGION = "us-west-2"
DEFAULT_PATTERN = "*"
DEFAULT_AGE_DAYS = 90
DEFAULT_OWNERS = ["self"]
DEFAULT_INSTANCE_STATES = ["pending", "running", "shutting-down", "stopping", "stopped"]
DEFAULT_MAX_ATTEMPTS = 5

GLOB_CHARS = "*?"


class ConfigurationError(Exception):
    """Region, profile or credentials could not be established."""


class EnumerationError(Exception):
    """A listing call against the EC2 API failed."""

    def __init__(self, operation: str, message: str, code: Optional[str] = None):
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.code = code


def non_negative_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {value!r}")
    if n < 0:
        raise argparse.ArgumentTypeError(f"must be >= 0, got {n}")
    return n


def parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Find AMIs not used by any recently launched instance (read-only)")
    p.add_argument("--pattern", default=DEFAULT_PATTERN,
                   help="Image name pattern: plain substring, or glob if it contains * or ? (default: *)")
    p.add_argument("--region", help=f"AWS region (default: configured region, else {DEFAULT_REGION})")
    p.add_argument("--age", type=non_negative_int, default=DEFAULT_AGE_DAYS,
                   help="Instances launched within this many days keep their AMI in use (default 90)")
    p.add_argument("--profile", help="AWS profile name")
    p.add_argument("--owner", action="append",
                   help="Image owner (account id, 'self', 'amazon'); repeatable (default: self)")
    p.add_argument("--state", action="append",
                   help="Instance state counted as in use; repeatable (default: all but terminated)")
    p.add_argument("--show-instances", action="store_true", help="Also list reservation and instance IDs")
    p.add_argument("--json", action="store_true", help="JSON output")
    p.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS,
                   help="Max attempts per API call, including throttling retries (default 5)")
    p.add_argument("--verbose", action="store_true", help="Progress output on stderr")
    return p.parse_args(argv)


# --- filters and matching ---------------------------------------------------

def build_filters(m: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Turn ``{name: value}`` into EC2 filter objects.

    Values may be a string or a list of strings. Empty values are dropped and
    the remaining filters are emitted sorted by name, so identical inputs
    always produce identical requests.
    """
    filters = []
    for name in sorted(m):
        value = m[name]
        if not value:
            continue
        values = [value] if isinstance(value, str) else [v for v in value if v]
        if not values:
            continue
        filters.append({"Name": name, "Values": values})
    return filters


def has_glob(pattern: str) -> bool:
    return any(c in pattern for c in GLOB_CHARS)


def image_name_filter(pattern: Optional[str]) -> str:
    if not pattern:
        return "*"
    if has_glob(pattern):
        return pattern
    return f"*{pattern}*"


def name_matches(name: Optional[str], pattern: Optional[str]) -> bool:
    name = name or ""
    if not pattern:
        return True
    if has_glob(pattern):
        return fnmatch.fnmatchcase(name, pattern)
    return pattern in name


def format_timestamp(ts: dt.datetime) -> str:
    return ts.astimezone(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def launch_cutoff(age_days: int, now: Optional[dt.datetime] = None) -> dt.datetime:
    if age_days < 0:
        raise ConfigurationError(f"age must be >= 0, got {age_days}")
    now = now or dt.datetime.now(dt.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=dt.timezone.utc)
    return now - dt.timedelta(days=age_days)


# --- inventory ----------------------------------------------------------------

class Ec2Inventory:
    """The two EC2 listing calls the finder needs, with pagination drained.

    Anything exposing ``list_instances`` and ``list_images`` with the same
    signatures can be used in its place.
    """

    def __init__(self, ec2):
        self.ec2 = ec2

    def _paginate(self, operation: str, **kwargs):
        try:
            paginator = self.ec2.get_paginator(operation)
            return list(paginator.paginate(**kwargs))
        except ClientError as e:
            err = e.response.get("Error", {})
            raise EnumerationError(operation, err.get("Message") or str(e), err.get("Code")) from e
        except BotoCoreError as e:
            raise EnumerationError(operation, str(e)) from e

    def list_instances(self, filters: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        kwargs = {"Filters": filters} if filters else {}
        out = []
        for page in self._paginate("describe_instances", **kwargs):
            for r in page.get("Reservations", []):
                for inst in r.get("Instances", []):
                    out.append(dict(inst, ReservationId=r.get("ReservationId")))
        return out

    def list_images(self, filters: List[Dict[str, Any]], owners: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if filters:
            kwargs["Filters"] = filters
        if owners:
            kwargs["Owners"] = list(owners)
        out = []
        for page in self._paginate("describe_images", **kwargs):
            out.extend(page.get("Images", []))
        return out


# --- pipeline -------------------------------------------------------------------

def _as_utc(ts: Any) -> Optional[dt.datetime]:
    if isinstance(ts, str):
        ts = dt.datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if not isinstance(ts, dt.datetime):
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=dt.timezone.utc)
    return ts.astimezone(dt.timezone.utc)


def enumerate_instances(inventory, age_days: int, states: Optional[Iterable[str]] = None,
                        now: Optional[dt.datetime] = None) -> List[Dict[str, Any]]:
    cutoff = launch_cutoff(age_days, now)
    states = list(states) if states else DEFAULT_INSTANCE_STATES
    instances = inventory.list_instances(build_filters({"instance-state-name": states}))
    out = []
    for inst in instances:
        launched = _as_utc(inst.get("LaunchTime"))
        # no LaunchTime: treat as in use
        if launched is None or launched >= cutoff:
            out.append(inst)
    return out


def enumerate_images(inventory, pattern: str, owners: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    owners = list(owners) if owners else DEFAULT_OWNERS
    return inventory.list_images(build_filters({"name": image_name_filter(pattern)}), owners)


def used_image_ids(instances: Iterable[Dict[str, Any]]) -> set:
    return {inst["ImageId"] for inst in instances if inst.get("ImageId")}


def find_unused_images(instances: List[Dict[str, Any]], images: List[Dict[str, Any]],
                       pattern: str) -> List[Dict[str, Any]]:
    # used set must be complete before any image is classified
    used = used_image_ids(instances)
    return [
        img for img in images
        if img.get("ImageId") not in used and name_matches(img.get("Name"), pattern)
    ]


def group_reservations(instances: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out: Dict[str, List[str]] = {}
    for inst in instances:
        out.setdefault(inst.get("ReservationId") or "-", []).append(inst.get("InstanceId"))
    return [{"reservation_id": k, "instance_ids": v} for k, v in out.items()]


# --- configuration ----------------------------------------------------------

def session(profile: Optional[str]):
    try:
        if profile:
            return boto3.Session(profile_name=profile)
        return boto3.Session()
    except ProfileNotFound as e:
        raise ConfigurationError(str(e)) from e


def resolve_region(sess, explicit: Optional[str]) -> str:
    return explicit or sess.region_name or DEFAULT_REGION


def ec2_client(sess, region: str, max_attempts: int):
    cfg = Config(retries={"max_attempts": max(1, max_attempts), "mode": "standard"})
    try:
        if sess.get_credentials() is None:
            raise ConfigurationError("no AWS credentials found (env, shared config or instance role)")
        return sess.client("ec2", region_name=region, config=cfg)
    except BotoCoreError as e:
        raise ConfigurationError(str(e)) from e


# --- output -------------------------------------------------------------------

def render_text(unused: List[Dict[str, Any]], reservations: Optional[List[Dict[str, Any]]] = None) -> str:
    lines = []
    if reservations is not None:
        for r in reservations:
            lines.append(f"Reservation ID: {r['reservation_id']}")
            lines.append("Instance IDs:")
            for iid in r["instance_ids"]:
                lines.append(f"   {iid}")
            lines.append("")
    lines.append("Unused AMIs:")
    lines.extend(img["ImageId"] for img in unused)
    return "\n".join(lines)


def render_json(report: Dict[str, Any]) -> str:
    return json.dumps(report, indent=2, default=str)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        sess = session(args.profile)
        region = resolve_region(sess, args.region)
        inventory = Ec2Inventory(ec2_client(sess, region, args.max_attempts))
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    now = dt.datetime.now(dt.timezone.utc)
    try:
        instances = enumerate_instances(inventory, args.age, args.state, now=now)
        if args.verbose:
            print(f"region {region}: {len(instances)} instances launched in the last {args.age} days", file=sys.stderr)
        images = enumerate_images(inventory, args.pattern, args.owner)
        if args.verbose:
            print(f"region {region}: {len(images)} images matched {image_name_filter(args.pattern)!r}", file=sys.stderr)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except EnumerationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    unused = find_unused_images(instances, images, args.pattern)
    reservations = group_reservations(instances) if args.show_instances else None

    if args.json:
        report = {
            "region": region,
            "pattern": args.pattern,
            "age_days": args.age,
            "cutoff": format_timestamp(launch_cutoff(args.age, now)),
            "owners": args.owner or DEFAULT_OWNERS,
            "instances_scanned": len(instances),
            "used_image_ids": sorted(used_image_ids(instances)),
            "images_scanned": len(images),
            "unused": [
                {"image_id": i.get("ImageId"), "name": i.get("Name"), "creation_date": i.get("CreationDate")}
                for i in unused
            ],
            "count": len(unused),
        }
        if reservations is not None:
            report["reservations"] = reservations
        print(render_json(report))
        return 0

    print(render_text(unused, reservations))
    return 0


def run():
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        sys.exit(130)
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
