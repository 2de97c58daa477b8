import shortuuid

_DIGITS = "0123456789"


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_numeric_code(length: int = 6) -> str:
    # Leading digit is non-zero so codes keep their length when typed as numbers.
    head = shortuuid.ShortUUID(alphabet="123456789").random(length=1)
    tail = shortuuid.ShortUUID(alphabet=_DIGITS).random(length=length - 1)
    return f"{head}{tail}"
