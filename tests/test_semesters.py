from datetime import date

import pytest

from semesters import Semester, next_semester, previous_semester, semester_dates, semester_for


@pytest.mark.parametrize(
    "semester, expected",
    [
        (Semester.SPRING, (date(2025, 4, 1), date(2025, 7, 31))),
        (Semester.SUMMER, (date(2025, 8, 1), date(2025, 8, 31))),
        (Semester.FALL, (date(2025, 9, 1), date(2025, 12, 31))),
        (Semester.WINTER, (date(2026, 1, 1), date(2026, 3, 31))),
    ],
)
def test_semester_dates(semester, expected):
    assert semester_dates(semester, 2025) == expected


def test_semester_for_winter_belongs_to_previous_academic_year():
    assert semester_for(date(2026, 2, 10)) == (2025, Semester.WINTER)
    assert semester_for(date(2025, 5, 1)) == (2025, Semester.SPRING)


def test_semester_navigation_wraps_the_academic_year():
    assert next_semester(2025, Semester.WINTER) == (2026, Semester.SPRING)
    assert previous_semester(2025, Semester.SPRING) == (2024, Semester.WINTER)
    assert next_semester(2025, Semester.SUMMER) == (2025, Semester.FALL)


def test_every_month_maps_to_a_semester_within_its_dates():
    for month in range(1, 13):
        day = date(2026, month, 15)
        academic_year, semester = semester_for(day)
        start, end = semester_dates(semester, academic_year)
        assert start <= day <= end
