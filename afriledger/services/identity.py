import hashlib
import re
import secrets

import bcrypt

PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
PIN_PATTERN = re.compile(r"^\d{4}$")
ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_phone(phone: str) -> str:
    return re.sub(r"\s", "", phone or "")

def is_valid_phone(phone: str) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))

def is_valid_pin(pin: str) -> bool:
    return bool(PIN_PATTERN.match(pin or ""))

def is_valid_address(address: str) -> bool:
    return bool(ADDRESS_PATTERN.match(address or ""))


def hash_phone(phone: str) -> str:
    """One-way identity key for a phone number."""
    return hashlib.sha256(normalize_phone(phone).encode()).hexdigest()

def generate_wallet_address() -> str:
    return "0x" + secrets.token_hex(20)


def hash_pin(pin: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(pin.encode(), bcrypt.gensalt(rounds=rounds)).decode()

def check_pin(pin: str, pin_hash: str) -> bool:
    return bcrypt.checkpw(pin.encode(), pin_hash.encode())
