import pytest

from scim_provider.modules.scim.domain.filter import (
    And,
    AttributePath,
    Comparison,
    Not,
    Or,
    Presence,
    ValuePath,
    compile_filter,
    evaluate,
    parse_filter,
    parse_patch_path,
)
from scim_provider.shared.core.exceptions import FilterParseError

ENTERPRISE = "urn:ietf:params:scim:schemas:extension:enterprise:2.0:User"


@pytest.fixture
def bjensen():
    return {
        "schemas": ["urn:ietf:params:scim:schemas:core:2.0:User", ENTERPRISE],
        "id": "2819c223-7f76-453a-919d-413861904646",
        "userName": "BJensen",
        "name": {"givenName": "Barbara", "familyName": "Jensen"},
        "title": "Tour Guide",
        "active": True,
        "emails": [
            {"value": "bjensen@example.com", "type": "work", "primary": True},
            {"value": "babs@jensen.org", "type": "home"},
        ],
        ENTERPRISE: {"employeeNumber": "701984", "manager": {"value": "26118915"}},
        "meta": {
            "resourceType": "User",
            "created": "2011-08-01T18:29:49Z",
            "lastModified": "2011-08-01T18:29:49Z",
        },
    }


def test_and_binds_tighter_than_or():
    expression = parse_filter('title pr or userName eq "a" and active eq true')

    assert isinstance(expression, Or)
    assert expression.left == Presence(AttributePath("title"))
    assert isinstance(expression.right, And)
    assert expression.right.left == Comparison(AttributePath("userName"), "eq", "a")
    assert expression.right.right == Comparison(AttributePath("active"), "eq", True)


def test_parentheses_override_precedence():
    expression = parse_filter('(title pr or userName eq "a") and not (active eq false)')

    assert isinstance(expression, And)
    assert isinstance(expression.left, Or)
    assert isinstance(expression.right, Not)


def test_operators_and_keywords_are_case_insensitive():
    expression = parse_filter('userName EQ "x" AND title PR')

    assert isinstance(expression, And)
    assert expression.left.operator == "eq"


def test_value_path_and_urn_paths_parse():
    expression = parse_filter('emails[type eq "work" and value co "@example.com"]')
    assert isinstance(expression, ValuePath)
    assert expression.path.attribute == "emails"

    expression = parse_filter(f'{ENTERPRISE}:manager.value eq "26118915"')
    assert expression.path == AttributePath("manager", "value", ENTERPRISE)


def test_literal_values():
    assert parse_filter("age gt 20").value == 20
    assert parse_filter("score le 1.5").value == 1.5
    assert parse_filter("manager eq null").value is None
    assert parse_filter('title eq "say \\"hi\\""').value == 'say "hi"'


@pytest.mark.parametrize(
    ("text", "position", "expected"),
    [
        ("userName eq", 11, "comparison value"),
        ('userName zz "x"', 9, "operator"),
        ('(userName eq "x"', 16, "')'"),
        ('userName eq "x" title pr', 16, "end of expression"),
        ("", 0, "filter expression"),
    ],
)
def test_malformed_filters_report_position(text, position, expected):
    with pytest.raises(FilterParseError) as exc_info:
        parse_filter(text)

    assert exc_info.value.position == position
    assert exc_info.value.expected == expected
    assert exc_info.value.scim_type == "invalidFilter"
    assert exc_info.value.status_code == 400


def test_unterminated_string_is_rejected():
    with pytest.raises(FilterParseError) as exc_info:
        parse_filter('userName eq "bjensen')

    assert exc_info.value.position == 12


def test_string_comparison_honours_case_exactness(bjensen, user_type):
    assert evaluate(parse_filter('userName eq "bjensen"'), bjensen, user_type)
    assert evaluate(parse_filter('userName sw "BJ"'), bjensen, user_type)
    # id is caseExact
    assert not evaluate(
        parse_filter('id eq "2819C223-7F76-453A-919D-413861904646"'), bjensen, user_type
    )


def test_multi_valued_attribute_matches_any_value(bjensen, user_type):
    assert evaluate(parse_filter('emails co "jensen.org"'), bjensen, user_type)
    assert evaluate(parse_filter('emails.type eq "home"'), bjensen, user_type)
    assert evaluate(
        parse_filter('emails[type eq "work" and value ew "example.com"]'), bjensen, user_type
    )
    assert not evaluate(
        parse_filter('emails[type eq "home" and value ew "example.com"]'), bjensen, user_type
    )


def test_datetime_comparison(bjensen, user_type):
    assert evaluate(parse_filter('meta.lastModified gt "2011-05-13T04:42:34Z"'), bjensen, user_type)
    assert not evaluate(
        parse_filter('meta.lastModified lt "2011-05-13T04:42:34Z"'), bjensen, user_type
    )


def test_extension_attribute_and_presence(bjensen, user_type):
    assert evaluate(parse_filter(f'{ENTERPRISE}:employeeNumber eq "701984"'), bjensen, user_type)
    assert evaluate(parse_filter(f"{ENTERPRISE}:manager.value pr"), bjensen, user_type)
    assert not evaluate(parse_filter("nickName pr"), bjensen, user_type)


def test_missing_attribute_semantics(bjensen, user_type):
    assert evaluate(parse_filter("nickName eq null"), bjensen, user_type)
    assert evaluate(parse_filter('nickName ne "x"'), bjensen, user_type)
    assert not evaluate(parse_filter('nickName eq "x"'), bjensen, user_type)
    assert evaluate(parse_filter('not (nickName eq "x")'), bjensen, user_type)


def test_type_mismatch_does_not_match(bjensen, user_type):
    assert not evaluate(parse_filter('active eq "true"'), bjensen, user_type)
    assert not evaluate(parse_filter("userName gt 3"), bjensen, user_type)


def test_evaluation_does_not_mutate_resource(bjensen, user_type):
    before = repr(bjensen)
    matcher = compile_filter('title pr and emails[primary eq true]', user_type)

    assert matcher(bjensen)
    assert repr(bjensen) == before


def test_patch_path_forms():
    simple = parse_patch_path("name.familyName")
    assert simple.attribute == AttributePath("name", "familyName")
    assert simple.target_sub_attribute == "familyName"

    filtered = parse_patch_path('emails[type eq "work"].value')
    assert filtered.attribute == AttributePath("emails")
    assert isinstance(filtered.value_filter, Comparison)
    assert filtered.target_sub_attribute == "value"

    extension = parse_patch_path(f"{ENTERPRISE}:employeeNumber")
    assert extension.attribute.urn == ENTERPRISE


def test_patch_path_rejects_garbage():
    with pytest.raises(FilterParseError):
        parse_patch_path('emails[type eq "work"')
    with pytest.raises(FilterParseError):
        parse_patch_path("name.givenName.extra")
