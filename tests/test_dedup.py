from centermap.etl.dedup import dedup, dedup_key, quality_score
from centermap.models import Center, Extra


def _center(entity_id, name="가람센터", address="서울 마포구 1", **kwargs):
    return Center(id=entity_id, name=name, address=address, **kwargs)


def test_dedup_key_ignores_case_and_whitespace():
    assert dedup_key(_center("1", name=" Garam ", address="Seoul ")) == dedup_key(
        _center("2", name="garam", address="SEOUL")
    )


def test_coordinates_win_regardless_of_order():
    bare = _center("bare", phone="02-1", intro="소개", programs="미술")
    located = _center("located", lat=37.5, lng=127.0)

    assert dedup([bare, located])[0] is located
    assert dedup([located, bare])[0] is located


def test_ties_keep_first_seen():
    first = _center("first")
    second = _center("second")

    assert dedup([first, second]) == [first]
    assert dedup([first, second])[0] is first


def test_output_follows_first_appearance_of_each_key():
    a = _center("a", name="A")
    b = _center("b", name="B")
    a_better = _center("a2", name="A", homepage_url="https://a.kr")

    result = dedup([a, b, a_better])

    assert [center.id for center in result] == ["a2", "b"]


def test_dedup_is_idempotent():
    centers = [
        _center("1", name="A"),
        _center("2", name="A", lat=1.0, lng=2.0),
        _center("3", name="B"),
        _center("4", name="C", phone="031"),
        _center("5", name="C"),
    ]

    once = dedup(centers)

    assert dedup(once) == once


def test_quality_score_components():
    plain = _center("1", address="")
    rich = _center(
        "2",
        phone="02",
        homepage_url="https://x.kr",
        meta_lines=["정원: 30명", "현원: 20명"],
        extras=[Extra(label=str(i), value="v") for i in range(100)],
    )

    assert quality_score(plain) == 0
    assert quality_score(rich) == 5 + 2 + 2 + 2 + 3
