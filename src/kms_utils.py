# kms_utils.py
"""
KMS wrapping for carrier tokens and webhook secrets kept in the app-config table.

A stored secret is either plaintext or ENCRYPTED(<base64 KMS ciphertext>), always
encrypted under the context {"app": "storefront-fulfillment"}.

    wrapped = kms_encrypt("shippo_live_abc...", key_arn)   # "ENCRYPTED(...)"
    token = kms_decrypt_wrapped(wrapped)                     # "shippo_live_abc..."
    logger.info(f"token {mask_secret(token)}")               # last 4 characters visible
"""

import base64
import binascii
import logging
import os
from typing import Optional, Union

import boto3
from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

ENCRYPTION_CONTEXT = {"app": "storefront-fulfillment"}
_PREFIX = "ENCRYPTED("
_SUFFIX = ")"

_kms_client = None


def _get_kms_client():
    global _kms_client
    if _kms_client is None:
        region = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION", "us-west-2")
        _kms_client = boto3.client("kms", region_name=region)
    return _kms_client


def is_wrapped(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(_PREFIX) and value.endswith(_SUFFIX)


def _ciphertext_b64(value: str) -> str:
    return value[len(_PREFIX):-len(_SUFFIX)] if is_wrapped(value) else value


def kms_encrypt(plaintext: Union[str, bytes], kms_key_arn: Optional[str] = None) -> str:
    """Encrypt and wrap. The key defaults to FULFILLMENT_KMS_KEY_ARN."""
    key = kms_key_arn or os.environ.get("FULFILLMENT_KMS_KEY_ARN")
    if not key:
        raise ValueError("No KMS key: pass kms_key_arn or set FULFILLMENT_KMS_KEY_ARN")
    if isinstance(plaintext, str):
        plaintext = plaintext.encode("utf-8")

    try:
        out = _get_kms_client().encrypt(KeyId=key, Plaintext=plaintext, EncryptionContext=ENCRYPTION_CONTEXT)
    except ClientError as e:
        logger.error(f"❌ [KMS] encrypt failed: {e.response.get('Error', {}).get('Code', 'Unknown')}")
        raise
    return _PREFIX + base64.b64encode(out["CiphertextBlob"]).decode("ascii") + _SUFFIX


def kms_decrypt(wrapped: str) -> bytes:
    """Decrypt ENCRYPTED(...) or bare base64 ciphertext to bytes."""
    if not wrapped:
        raise ValueError("Nothing to decrypt")
    try:
        blob = base64.b64decode(_ciphertext_b64(wrapped), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Ciphertext is not base64: {e}")

    try:
        out = _get_kms_client().decrypt(CiphertextBlob=blob, EncryptionContext=ENCRYPTION_CONTEXT)
    except ClientError as e:
        logger.error(f"❌ [KMS] decrypt failed: {e.response.get('Error', {}).get('Code', 'Unknown')}")
        raise
    return out["Plaintext"]


def kms_decrypt_wrapped(value: str) -> str:
    """Plaintext values pass through; wrapped ones are decrypted to str (ValueError on failure)."""
    if not value:
        return ""
    if not is_wrapped(value):
        return value
    try:
        return kms_decrypt(value).decode("utf-8")
    except (ClientError, ValueError, UnicodeDecodeError) as e:
        raise ValueError(f"Could not decrypt secret: {e}") from e


def mask_secret(secret: Optional[str], keep: int = 4) -> str:
    """Stars for everything but the last `keep` characters."""
    if not secret:
        return ""
    shown = secret[-keep:] if len(secret) > keep else ""
    return "*" * (len(secret) - len(shown)) + shown
