import pytest

from crdipam.selector import LabelSelector


def test_empty_selector_matches_everything():
    selector = LabelSelector.parse("")

    assert selector.empty
    assert selector.matches({})
    assert selector.matches(None)
    assert LabelSelector.parse("{}").empty


def test_match_labels_from_json():
    selector = LabelSelector.parse('{"matchLabels":{"noStatic":"true"}}')

    assert selector.matches({"noStatic": "true", "app": "web"})
    assert not selector.matches({"noStatic": "false"})
    assert not selector.matches({})


def test_yaml_booleans_become_label_strings():
    selector = LabelSelector.parse("matchLabels:\n  nostatic: true\n")

    assert selector.match_labels == {"nostatic": "true"}
    assert selector.matches({"nostatic": "true"})


def test_match_expressions_from_yaml():
    selector = LabelSelector.parse(
        """
matchExpressions:
- key: cilium-ipam-injector
  operator: NotIn
  values:
  - disabled
- key: DBType
  operator: In
  values:
  - postgres
- key: AppName
  operator: Exists
- key: legacy
  operator: DoesNotExist
"""
    )

    assert selector.matches({"DBType": "postgres", "AppName": "db"})
    assert not selector.matches({"DBType": "postgres", "AppName": "db", "cilium-ipam-injector": "disabled"})
    assert not selector.matches({"DBType": "mysql", "AppName": "db"})
    assert not selector.matches({"DBType": "postgres"})
    assert not selector.matches({"DBType": "postgres", "AppName": "db", "legacy": "yes"})


@pytest.mark.parametrize(
    "text",
    [
        "[1, 2]",
        '{"matchLabels": ["a"]}',
        '{"matchExpressions": [{"key": "a", "operator": "Like", "values": ["b"]}]}',
        '{"matchExpressions": [{"key": "a", "operator": "In"}]}',
        '{"matchExpressions": [{"key": "a", "operator": "Exists", "values": ["b"]}]}',
        '{"matchExpressions": [{"operator": "Exists"}]}',
        '{"selector": {}}',
        "matchLabels: [unclosed",
    ],
)
def test_invalid_selectors(text):
    with pytest.raises(ValueError):
        LabelSelector.parse(text)
