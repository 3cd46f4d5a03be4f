"""BLE mesh transport.

Nearby devices discover each other over Bluetooth Low Energy, secure each
link with a Noise XX handshake and exchange packets (chat, presence and
encrypted blockchain transactions) without any infrastructure.
"""
