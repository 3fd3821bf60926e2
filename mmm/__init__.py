"""Minecraft mod manager: resolve, identify and track mods from Modrinth and CurseForge."""

__version__ = "0.1.0"
