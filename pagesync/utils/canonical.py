import orjson


def dumps(d) -> str:
    # compact, no spaces; orjson never emits NaN so the output is always valid JSON
    return orjson.dumps(d).decode("utf-8")


def dumps_bytes(d) -> bytes:
    return orjson.dumps(d)


def loads(raw):
    return orjson.loads(raw)


JSONDecodeError = orjson.JSONDecodeError
