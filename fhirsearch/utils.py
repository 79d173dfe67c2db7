def get_from_path(obj, path):
    """Read a dotted path from a record, None when any step is missing.
    Lists along the path are flattened."""
    return _get_from_steps(obj, path.split("."))


def _get_from_steps(obj, steps):
    if steps == [] or obj is None:
        return obj
    if isinstance(obj, list):
        res = []
        for el in obj:
            res_el = _get_from_steps(el, steps)
            if isinstance(res_el, list):
                res.extend(res_el)
            elif res_el is not None:
                res.append(res_el)
        return res
    return _get_from_steps(obj.get(steps[0]), steps[1:])


def compact(obj):
    """Drop None values, empty lists and empty dicts, recursively."""
    if isinstance(obj, dict):
        res = {key: compact(value) for key, value in obj.items()}
        return {key: value for key, value in res.items() if value not in (None, [], {})}
    if isinstance(obj, list):
        res = [compact(el) for el in obj]
        return [el for el in res if el not in (None, [], {})]
    return obj
