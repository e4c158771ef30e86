"""Appointments domain - Status machine, recurring sessions and lifecycle operations"""
