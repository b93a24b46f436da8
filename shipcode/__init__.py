"""Client-side synchronized data layer for the ShipCode agency OS."""
