#
# Shell integration scripts printed by `raven init`
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

ZSH_INIT = r'''
autoload -U add-zsh-hook

_raven_preexec() {
  local id
  id=$(raven history start -- "$1")
  export RAVEN_HISTORY_ID="$id"
}

_raven_precmd() {
  local EXIT="$?"
  [[ -z "${RAVEN_HISTORY_ID:-}" ]] && return

  (raven history end --exit $EXIT -- $RAVEN_HISTORY_ID)
  # Clear the ID for the next command.
  export RAVEN_HISTORY_ID=""
}

add-zsh-hook preexec _raven_preexec
add-zsh-hook precmd _raven_precmd

_raven_search() {
  local output
  output=$(RAVEN_QUERY="$BUFFER" raven search --interactive </dev/tty)
  if [[ -n "$output" ]]; then
    BUFFER="$output"
    CURSOR=${#BUFFER}
  fi
  zle reset-prompt
}

_raven_recall() {
  local direction="$1" output
  if [[ "$LASTWIDGET" != _raven_up_line && "$LASTWIDGET" != _raven_down_line ]]; then
    _raven_recall_prefix="$BUFFER"
    _raven_recall_id=""
  fi
  output=$(RAVEN_QUERY="$_raven_recall_prefix" raven search --shell-up-key --print-id \
    --direction "$direction" ${_raven_recall_id:+--anchor $_raven_recall_id})
  if [[ -z "$output" ]]; then
    if [[ "$direction" == newer ]]; then
      _raven_recall_id=""
      BUFFER="$_raven_recall_prefix"
      CURSOR=${#BUFFER}
    fi
    return
  fi
  _raven_recall_id="${output%%$'\t'*}"
  BUFFER="${output#*$'\t'}"
  CURSOR=${#BUFFER}
}

_raven_up_line() { _raven_recall older }
_raven_down_line() { _raven_recall newer }

# Suggestion strategy for zsh-autosuggestions
_zsh_autosuggest_strategy_raven() {
  typeset -g suggestion
  suggestion=$(RAVEN_QUERY="$1" raven search --suggest 2>/dev/null)
}

zle -N _raven_search
zle -N _raven_up_line
zle -N _raven_down_line

bindkey '^r' _raven_search
bindkey '^[[A' _raven_up_line
bindkey '^[OA' _raven_up_line
bindkey '^[[B' _raven_down_line
bindkey '^[OB' _raven_down_line
'''

SCRIPTS = {
    "zsh": ZSH_INIT,
}
