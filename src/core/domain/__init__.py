"""Modelos, entidades y errores del dominio.

El dominio no conoce HTTP, CLI ni SDKs: solo conceptos del problema.
"""
