"""
DebugConsole - prints parser diagnostics to the console when enabled
"""

class DebugConsole:
    enabled = False

    @staticmethod
    def log(message):
        """Print debug message"""
        # Silent unless turned on, batch runs only want progress lines
        if DebugConsole.enabled:
            print(message)
