"""
Asset Registry - 航空資産レジストリ

機体・バーティポート・バーティパッド・資産グループの登録と、
オペレーター間の委任による実効支配の解決を行う。
入口は registry.AssetRegistry（永続化サービスはコンストラクタで渡す）。
"""
