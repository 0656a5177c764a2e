JSON_INDENT = 2


def compact_snippet(value, limit=300):
    """Collapse runs of whitespace and cap the result at `limit` characters."""
    compact = " ".join(value.split())
    if len(compact) > limit:
        return compact[:limit] + "..."
    return compact


def write_output(output, stream):
    if output.endswith("\n"):
        stream.write(output)
    else:
        stream.write(output + "\n")
