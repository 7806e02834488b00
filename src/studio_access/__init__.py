"""Studio room bookings with smart-lock door passcodes."""
