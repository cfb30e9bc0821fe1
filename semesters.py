"""Academic semesters used to scope bulk template runs.

The academic year starts in April; winter falls in January to March of the
following calendar year.
"""

from datetime import date, timedelta
from enum import Enum
from typing import Optional, Tuple


class Semester(str, Enum):
    SPRING = "spring"
    SUMMER = "summer"
    FALL = "fall"
    WINTER = "winter"


_ORDER = (Semester.SPRING, Semester.SUMMER, Semester.FALL, Semester.WINTER)

# semester -> (first month, last month, calendar year offset)
_MONTHS = {
    Semester.SPRING: (4, 7, 0),
    Semester.SUMMER: (8, 8, 0),
    Semester.FALL: (9, 12, 0),
    Semester.WINTER: (1, 3, 1),
}


def _month_end(year: int, month: int) -> date:
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - timedelta(days=1)


def semester_dates(semester: Semester, academic_year: int) -> Tuple[date, date]:
    first, last, offset = _MONTHS[Semester(semester)]
    year = academic_year + offset
    return date(year, first, 1), _month_end(year, last)


# calendar month -> semester
_BY_MONTH = {
    month: semester
    for semester, (first, last, _) in _MONTHS.items()
    for month in range(first, last + 1)
}


def semester_for(day: Optional[date] = None) -> Tuple[int, Semester]:
    day = day or date.today()
    semester = _BY_MONTH[day.month]
    return day.year - _MONTHS[semester][2], semester


def next_semester(academic_year: int, semester: Semester) -> Tuple[int, Semester]:
    index = _ORDER.index(Semester(semester))
    if index == len(_ORDER) - 1:
        return academic_year + 1, _ORDER[0]
    return academic_year, _ORDER[index + 1]


def previous_semester(academic_year: int, semester: Semester) -> Tuple[int, Semester]:
    index = _ORDER.index(Semester(semester))
    if index == 0:
        return academic_year - 1, _ORDER[-1]
    return academic_year, _ORDER[index - 1]
