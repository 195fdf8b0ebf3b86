"""
systemdbus/dbus - D-Bus wire protocol
"""
