def validate_key(received_key, expected_key) -> bool:
    """Exact, case-sensitive comparison of a received key with the expected one.

    Possession of the shared string is the only proof an announcement carries.
    This is not cryptographic authentication and should not be treated as such.
    """
    if not isinstance(received_key, str) or not isinstance(expected_key, str):
        return False
    return received_key == expected_key
