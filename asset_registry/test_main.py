"""
コマンドライン引数のテスト（DB接続なし）

検証項目:
  1. サブコマンドごとの引数解釈
  2. 選択肢外の値は拒否されるか
"""
import sys

import pytest

from asset_registry import db_config
from asset_registry.main import build_parser

OP = '3f0c1a52-8d4e-4b7a-a1c9-0e6f2d8b5a13'
GROUP = '9b2e7c40-1f3a-4d6b-8e5c-7a0d4f1b2c96'

passed = 0
failed = 0


def run_test(name, func):
    global passed, failed
    try:
        func()
        passed += 1
        print(f"  ✅ {name}")
    except AssertionError as e:
        failed += 1
        print(f"  ❌ {name}: {e}")
    except Exception as e:
        failed += 1
        print(f"  ❌ {name}: 例外発生 {e.__class__.__name__}: {e}")


def test_defaults_from_config():
    """接続設定の既定値は環境変数由来の設定値"""
    args = build_parser().parse_args(['init-db'])
    assert args.database_url == db_config.DATABASE_URL
    assert args.pool_max == db_config.POOL_MAX_SIZE
    assert args.timeout == db_config.STORAGE_TIMEOUT

def test_operator_assets_mode():
    """operator-assets の既定モードは all"""
    args = build_parser().parse_args(['operator-assets', OP])
    assert args.operator == OP
    assert args.mode == 'all'
    args = build_parser().parse_args(['operator-assets', OP, '--mode', 'delegated_to'])
    assert args.mode == 'delegated_to'

def test_invalid_choices():
    """選択肢外のモード・削除方針は拒否される"""
    with pytest.raises(SystemExit):
        build_parser().parse_args(['operator-assets', OP, '--mode', 'borrowed'])
    with pytest.raises(SystemExit):
        build_parser().parse_args(['remove-vertiport', GROUP, '--policy', 'cascade'])

def test_delegate_args():
    """delegate は要求元オペレーターが必須"""
    args = build_parser().parse_args(['delegate', GROUP, OP, '--as', OP])
    assert (args.group, args.operator, args.requester, args.clear) == (GROUP, OP, OP, False)
    args = build_parser().parse_args(['delegate', GROUP, '--clear', '--as', OP])
    assert args.operator is None and args.clear
    with pytest.raises(SystemExit):
        build_parser().parse_args(['delegate', GROUP, OP])

def test_create_group_assets():
    """create-group はメンバーIDを複数受け取る"""
    args = build_parser().parse_args(['create-group', '--owner', OP, GROUP, OP])
    assert args.assets == [GROUP, OP]


if __name__ == '__main__':
    sections = [
        ("引数解釈", [
            ("既定値", test_defaults_from_config),
            ("operator-assets", test_operator_assets_mode),
            ("選択肢外の値", test_invalid_choices),
            ("delegate", test_delegate_args),
            ("create-group", test_create_group_assets),
        ]),
    ]

    for section_name, tests in sections:
        print(f"\n[{section_name}]")
        for test_name, test_func in tests:
            run_test(test_name, test_func)

    print(f"\n{'='*50}")
    print(f"結果: {passed} 件通過, {failed} 件失敗 / 全 {passed+failed} 件")
    if failed > 0:
        print("❌ テスト失敗あり")
        sys.exit(1)
    else:
        print("✅ 全テスト通過")
