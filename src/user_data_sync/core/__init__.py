"""
コア - データモデル・エラー分類・イベント通知
"""
