from app.batch.preparer import DEFAULT_ROW_LIMIT, PRODUCTION_ROW_LIMIT, group_rows, normalize_group_key, prepare_groups, resolve_row_limit


def test_row_limit_uses_tier_default_without_configuration():
  assert resolve_row_limit(None, production=True) == PRODUCTION_ROW_LIMIT
  assert resolve_row_limit(None, production=False) == DEFAULT_ROW_LIMIT


def test_row_limit_configuration_can_only_tighten_the_cap():
  assert resolve_row_limit(10, production=False) == 10
  assert resolve_row_limit(500, production=True) == PRODUCTION_ROW_LIMIT


def test_prepare_groups_caps_rows_and_preserves_order():
  raw = [{"key": "a", "rows": [{"n": i} for i in range(5)]}, {"key": "b", "rows": [{"n": 1}]}]

  prepared = prepare_groups(raw, row_limit=3)

  assert [group.key for group in prepared] == ["a", "b"]
  assert [group.order for group in prepared] == [0, 1]
  assert prepared[0].rows == [{"n": 0}, {"n": 1}, {"n": 2}]
  assert prepared[0].row_count == 3


def test_prepare_groups_defaults_missing_keys_and_bad_rows():
  prepared = prepare_groups([{"rows": "not-a-list"}, {"key": "   ", "rows": None}, "garbage"], row_limit=10)

  assert [group.key for group in prepared] == ["group-0", "group-1", "group-2"]
  assert all(group.rows == [] for group in prepared)


def test_prepare_groups_suffixes_duplicate_keys():
  prepared = prepare_groups([{"key": "dup", "rows": []}, {"key": "dup", "rows": []}], row_limit=10)

  assert [group.key for group in prepared] == ["dup", "dup#1"]


def test_prepare_groups_keeps_only_textual_hints():
  prepared = prepare_groups([{"key": "x", "rows": [], "municipality": " Springfield ", "state": ["IL"], "position": 7}], row_limit=10)

  group = prepared[0]
  assert group.municipality == "Springfield"
  assert group.state is None
  assert group.position == "7"


def test_normalize_group_key_collapses_whitespace_and_case():
  assert normalize_group_key({"municipality": "  New   York ", "state": "NY", "position": "Mayor"}) == "new york|ny|mayor"
  assert normalize_group_key({"municipality": "Austin", "state": "TX"}) == "austin|tx|unknown-position"


def test_group_rows_buckets_and_sorts_by_state_then_city():
  rows = [
    {"municipality": "Austin", "state": "TX", "position": "Mayor", "lastName": "A"},
    {"municipality": "Boston", "state": "MA", "position": "Mayor", "lastName": "B"},
    {"municipality": "austin", "state": "tx", "position": "mayor", "lastName": "C"},
  ]

  groups = group_rows(rows)

  assert [group["key"] for group in groups] == ["boston|ma|mayor", "austin|tx|mayor"]
  assert [row["lastName"] for row in groups[1]["rows"]] == ["A", "C"]
