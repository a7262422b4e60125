"""
Storefront — 決済コーディネーターと注文ライフサイクル

  payment/    ゲートウェイアダプタ・冪等台帳・コーディネーター
  order/      注文集約と状態遷移
  inventory/  在庫引き当てガード
"""

__version__ = "0.1.0"
