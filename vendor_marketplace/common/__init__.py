"""
vendor_marketplace/common

共通モジュール（ロギング・エラー・設定・暗号・ストレージ・DID解決）
"""
