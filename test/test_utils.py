from fhirsearch import utils


def test_get_from_path():
    obj = {"a": [{"b": 1}, {"b": 2}], "c": 3}

    assert utils.get_from_path(obj, "a.b") == [1, 2]

    # nested
    obj = {"a": [{"b": 1, "c": [2]}, {"b": 3, "c": [4, 5]}]}

    assert utils.get_from_path(obj, "a.c") == [2, 4, 5]


def test_get_from_path_missing():
    assert utils.get_from_path({"length": {"value": 30}}, "length.unit") is None
    assert utils.get_from_path({}, "length.value") is None
    assert utils.get_from_path({"a": [{"b": 1}, {}]}, "a.b") == [1]


def test_compact():
    assert utils.compact({"a": None, "b": [], "c": {"d": None}, "e": [{"f": None}, 0], "g": False}) == {
        "e": [0],
        "g": False,
    }
