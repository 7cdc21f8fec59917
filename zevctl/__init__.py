"""zevctl - command line console for a ZEV billing device."""
