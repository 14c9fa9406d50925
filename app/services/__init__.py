"""
Services package: fragment store, stage processors, scanners, coordinator and providers.
"""
