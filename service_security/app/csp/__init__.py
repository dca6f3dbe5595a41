"""
Content-Security-Policy package.

- directives: Directive vocabulary and the ordered-set DirectiveSet.
- presets: Base banking policy plus environment and feature overlays.
- composer: Composition, nonce lifecycle, header generation, policy
  validation and violation intake.
"""
