from signing import (
    LEGACY_HEARTBEAT_SIGNS,
    LEGACY_PUSH_SIGNS,
    create_order_sign,
    heartbeat_sign,
    matches_any,
    notify_sign,
    push_sign,
    sign_matches,
)


def test_create_order_sign_golden():
    assert create_order_sign("p1", "", 1, "10.00", "k") == "2ea06a470babbbeba39f7b488a90ac79"


def test_create_order_sign_treats_missing_param_as_empty():
    assert create_order_sign("p1", None, "1", "10.00", "k") == create_order_sign("p1", "", 1, "10.00", "k")


def test_heartbeat_sign_golden():
    assert heartbeat_sign("1700000000", "k") == "d76a042e94475ba3fb15347bfd11a189"


def test_push_sign_golden():
    assert push_sign("1", "12.34", "1700000000", "k") == "3ecc96e0937e796d66a3f55c104a11a0"


def test_notify_sign_golden():
    assert notify_sign("p1", "", 1, "10.00", "10.01", "k") == "58e894508132552bbff99875d67b7628"


def test_sign_comparison_ignores_case():
    assert sign_matches("D76A042E94475BA3FB15347BFD11A189", "d76a042e94475ba3fb15347bfd11a189")
    assert not sign_matches("", "d76a042e94475ba3fb15347bfd11a189")
    assert not sign_matches(None, "d76a042e94475ba3fb15347bfd11a189")


def test_legacy_heartbeat_accepts_padded_timestamp():
    sign = "d76a042e94475ba3fb15347bfd11a189"
    assert matches_any(sign, LEGACY_HEARTBEAT_SIGNS, " 1700000000", "k")
    assert matches_any(sign, LEGACY_HEARTBEAT_SIGNS, "1700000000", "k ")
    assert not matches_any(sign, [heartbeat_sign], " 1700000000", "k")


def test_legacy_push_accepts_padded_fields():
    sign = "3ecc96e0937e796d66a3f55c104a11a0"
    assert matches_any(sign, LEGACY_PUSH_SIGNS, " 1", "12.34 ", "1700000000", "k")
    assert not matches_any(sign, [push_sign], " 1", "12.34 ", "1700000000", "k")
    assert not matches_any(sign, LEGACY_PUSH_SIGNS, "2", "12.34", "1700000000", "k")
