#!/usr/bin/env python3
"""
Seed script for the fulfillment keys in app-config-{env} DynamoDB tables.

- 'global' rows (carrier selection, label behaviour, mail sender name) are always written
- ship-from and SES rows are written for the chosen environment only (table app-config-<env>)
- Secrets can be set from the command line; with --encrypt they are stored as
  ENCRYPTED(<base64 KMS ciphertext>) using FULFILLMENT_KMS_KEY_ARN / --kms-key-arn

Usage:
  python seed_app_config.py --region us-west-2 --environment dev
  python seed_app_config.py --region us-west-2 --environment prod \
      --secret shippo_api_key=shippo_live_xxx --secret stripe_webhook_secret=whsec_xxx \
      --encrypt --kms-key-arn arn:aws:kms:us-west-2:123456789012:key/...
"""

import argparse
import os
import sys
from datetime import datetime, timezone
from typing import List, Tuple

import boto3

from kms_utils import kms_encrypt

VALID_ENVS = {"dev", "prod"}

SECRET_KEYS = {
    "shippo_api_key",
    "shippo_test_api_key",
    "shippo_webhook_secret",
    "shipengine_api_key",
    "shipstation_api_key",
    "shipstation_api_secret",
    "stripe_webhook_secret",
}

ConfigRow = Tuple[str, str, str, str]


def table_name_for_app_config(env: str) -> str:
    if env not in VALID_ENVS:
        raise ValueError(f"Unsupported environment '{env}'. Choose from {sorted(VALID_ENVS)}.")
    return f"app-config-{env}"


def default_items(environment: str) -> List[ConfigRow]:
    # shared by every environment
    global_items = [
        ('shipping_provider',            'global', 'shippo', 'shippo | shipengine | shipstation | mock'),
        ('label_idempotency_enforced',   'global', 'false',  'Replay stored label results for a repeated Idempotency-Key'),
        ('label_proxy_allowed_hosts',    'global', '',       'Extra host regexes for the label proxy (comma separated)'),
        ('shipstation_default_carrier_code', 'global', '',   'ShipStation carrier when a rate id has none'),
        ('shipstation_default_service_code', 'global', '',   'ShipStation service when a rate id has none'),
        ('shipengine_carrier_ids',       'global', '',       'ShipEngine carrier ids (comma separated; empty = all)'),
        ('store_display_name',           'global', '',       'Store name used in shipment emails'),
        ('ses_from_name',                'global', '',       'Sender display name for shipment emails'),
    ]

    # per environment: ship-from address and SES sender
    dev_items = [
        ('shipping_origin_name',        'dev', '', 'Ship-from name'),
        ('shipping_origin_email',       'dev', '', 'Ship-from email'),
        ('shipping_origin_phone',       'dev', '', 'Ship-from phone'),
        ('shipping_origin_address1',    'dev', '', 'Ship-from street'),
        ('shipping_origin_address2',    'dev', '', 'Ship-from street line 2'),
        ('shipping_origin_city',        'dev', '', 'Ship-from city'),
        ('shipping_origin_state',       'dev', '', 'Ship-from state'),
        ('shipping_origin_postal_code', 'dev', '', 'Ship-from postal code'),
        ('shipping_origin_country',     'dev', 'US', 'Ship-from country'),
        ('ses_region',                  'dev', 'us-west-2', 'SES region (dev)'),
        ('ses_from_email',              'dev', '', 'Verified SES sender (dev)'),
    ]

    prod_items = [(k, 'prod', v, d.replace('(dev)', '(prod)')) for k, _env, v, d in dev_items]

    env_items = dev_items if environment == "dev" else prod_items
    return global_items + env_items


def parse_secret_args(pairs: List[str]) -> List[Tuple[str, str]]:
    out = []
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"--secret expects key=value, got '{pair}'")
        if key not in SECRET_KEYS:
            raise ValueError(f"Unknown secret key '{key}'. Choose from {sorted(SECRET_KEYS)}.")
        out.append((key, value))
    return out


def seed_config(region: str, environment: str, secrets: List[Tuple[str, str]],
                encrypt: bool = False, kms_key_arn: str = None) -> int:
    table_name = table_name_for_app_config(environment)
    dynamodb = boto3.resource("dynamodb", region_name=region)
    table = dynamodb.Table(table_name)
    now = datetime.now(timezone.utc).isoformat()

    items = default_items(environment)
    for key, value in secrets:
        stored = kms_encrypt(value, kms_key_arn) if encrypt else value
        items.append((key, environment, stored, "Secret (set by seed script)"))

    print(f"Seeding table '{table_name}' with {len(items)} items "
          f"(env={environment}) in region {region}...\n")

    ok = err = 0
    for config_key, env, value, description in items:
        try:
            table.put_item(Item={
                "config_key":  config_key,
                "environment": env,
                "value":       value,
                "description": description,
                "updated_at":  now,
                "updated_by":  "seed_script",
            })
            shown = "<secret>" if config_key in SECRET_KEYS else value
            print(f"✓ {config_key} ({env}) = {shown}")
            ok += 1
        except Exception as e:
            print(f"✗ {config_key} ({env}) -> {e}")
            err += 1

    print(f"\nSeeding complete. Success={ok}, Errors={err}")
    return err


def main():
    ap = argparse.ArgumentParser(description="Seed fulfillment keys into the app-config DynamoDB table")
    ap.add_argument("--region", default="us-west-2")
    ap.add_argument("--environment", default="dev", choices=sorted(VALID_ENVS))
    ap.add_argument("--secret", action="append", default=[], metavar="KEY=VALUE",
                    help="Secret value to store for the environment (repeatable)")
    ap.add_argument("--encrypt", action="store_true", help="KMS-encrypt --secret values")
    ap.add_argument("--kms-key-arn", default=os.environ.get("FULFILLMENT_KMS_KEY_ARN"))
    args = ap.parse_args()

    try:
        secrets = parse_secret_args(args.secret)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    if args.encrypt and secrets and not args.kms_key_arn:
        print("Error: --encrypt requires --kms-key-arn or FULFILLMENT_KMS_KEY_ARN")
        sys.exit(1)

    errors = seed_config(args.region, args.environment, secrets, args.encrypt, args.kms_key_arn)
    sys.exit(1 if errors else 0)


if __name__ == "__main__":
    main()
