"""
vendor_marketplace

ベンダーの信頼ハンドシェイク・プロフィール管理・PoPR発行を行うマーケットプレイス
"""

__version__ = "1.0.0"
