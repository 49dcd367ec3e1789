"""Dunning domain - payment reminders and suspension"""
