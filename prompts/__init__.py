"""
prompts/ — SRSForge Prompt Assembly

    PromptAssemblyEngine   renders the ten-section specialist prompt
    HistoryCompressor      tiered, token-budgeted tool history
    TemplateLoader         base + specialist template resolution
"""
