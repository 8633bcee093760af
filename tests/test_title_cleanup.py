import pytest

from quicktodo.parser import clean_title


@pytest.mark.parametrize('raw, expected', [
    ('call mom   ', 'Call mom'),
    ('  to the store  ', 'Store'),
    ('remind me to call at', 'Call'),
    ('set a reminder to water plants', 'Water plants'),
    ('set reminder for dentist', 'Dentist'),
    ('buy milk on', 'Buy milk'),
    ('for the team by', 'Team'),
    ('call    NASA   about   launch', 'Call NASA about launch'),
    ('pick up the kids', 'Pick up the kids'),
    ('', ''),
    ('   ', ''),
])
def test_clean_title(raw, expected):
    assert clean_title(raw) == expected


def test_only_first_letter_is_capitalised():
    assert clean_title('eBay order') == 'EBay order'
    assert clean_title('call NASA') == 'Call NASA'


@pytest.mark.parametrize('raw', [
    'remind me to to the gym',
    'reminder  the in at  bills',
    'to  at  on',
    'set a reminder for remind me to stretch',
    'Wash car on the',
])
def test_cleanup_is_idempotent(raw):
    once = clean_title(raw)
    assert clean_title(once) == once
